"""Domain models for the state machine engine."""

from fsmengine.domain.models.definition import LoadedTransition, MachineDefinition
from fsmengine.domain.models.entity import EntityContext, EntityRecord
from fsmengine.domain.models.history import FailureDetail, HistoryQuery, HistoryRecord
from fsmengine.domain.models.machine import (
    MachineConfig,
    StateConfig,
    StateType,
    TransitionConfig,
)
from fsmengine.domain.models.outcome import ReconciliationReport, TransitionOutcome

__all__ = [
    "EntityContext",
    "EntityRecord",
    "FailureDetail",
    "HistoryQuery",
    "HistoryRecord",
    "LoadedTransition",
    "MachineConfig",
    "MachineDefinition",
    "ReconciliationReport",
    "StateConfig",
    "StateType",
    "TransitionConfig",
    "TransitionOutcome",
]
