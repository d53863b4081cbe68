"""Domain interfaces for dependency injection."""

from fsmengine.domain.interfaces.capabilities import (
    Command,
    DefaultMachineFactory,
    MachineFactory,
    Rule,
)
from fsmengine.domain.interfaces.observability_manager import (
    EVENT_CONFIGURATION_CHANGED,
    EVENT_ENTITY_ADDED,
    EVENT_TRANSITION_COMMITTED,
    EVENT_TRANSITION_FAILED,
    ObservabilityError,
    ObservabilityManager,
)
from fsmengine.domain.interfaces.state_store import StateStore, StoreError

__all__ = [
    "EVENT_CONFIGURATION_CHANGED",
    "EVENT_ENTITY_ADDED",
    "EVENT_TRANSITION_COMMITTED",
    "EVENT_TRANSITION_FAILED",
    "Command",
    "DefaultMachineFactory",
    "MachineFactory",
    "ObservabilityError",
    "ObservabilityManager",
    "Rule",
    "StateStore",
    "StoreError",
]
