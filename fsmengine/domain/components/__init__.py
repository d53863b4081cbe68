"""Domain components."""

from fsmengine.domain.components.configuration_store import ConfigurationStore
from fsmengine.domain.components.entity_state_store import EntityStateStore
from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.components.loader import MachineLoader
from fsmengine.domain.components.registry import CapabilityRegistry
from fsmengine.domain.components.transition_engine import TransitionEngine
from fsmengine.domain.components.validator import MachineValidator

__all__ = [
    "CapabilityRegistry",
    "ConfigurationStore",
    "EntityStateStore",
    "HistoryLog",
    "MachineLoader",
    "MachineValidator",
    "TransitionEngine",
]
