"""Result models returned by the engine."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TransitionOutcome(BaseModel):
    """Result of a committed transition."""

    machine: str
    entity_id: str
    state_from: str
    state_to: str
    rule: str = Field(..., description="Rule reference that accepted the transition")
    command: str = Field(..., description="Command reference that was executed")
    priority: int
    changetime: datetime
    changetime_previous: datetime | None
    history_id: int | None = Field(
        default=None,
        description="Surrogate id of the appended history record",
    )

    model_config = ConfigDict(frozen=True)

    @property
    def is_self_transition(self) -> bool:
        return self.state_from == self.state_to


class ReconciliationReport(BaseModel):
    """Comparison of an entity's stored state with its history."""

    machine: str
    entity_id: str
    stored_state: str
    derived_state: str | None
    history_length: int
    problems: list[str] = Field(default_factory=list)
    repaired: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def consistent(self) -> bool:
        return not self.problems and self.stored_state == self.derived_state
