"""EntityRecord and EntityContext data models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class EntityRecord(BaseModel):
    """Current state of one entity within one machine.

    There is exactly one record per (machine, entity_id). It is created by the
    entity state store and afterwards only overwritten by successful
    transitions.
    """

    machine: str = Field(
        ...,
        description="Machine the entity belongs to",
        min_length=1,
    )
    entity_id: str = Field(
        ...,
        description="Opaque identifier owned by the calling domain",
        min_length=1,
        max_length=255,
    )
    state: str = Field(
        ...,
        description="Current state",
        min_length=1,
    )
    changetime: datetime = Field(
        default_factory=utcnow,
        description="When the current state was set",
    )

    # entity_id is opaque and stored exactly as given
    model_config = ConfigDict(frozen=True)

    @field_validator("entity_id")
    @classmethod
    def validate_entity_id(cls, v: str) -> str:
        """Validate entity ID is not blank."""
        if not v.strip():
            raise ValueError("Entity ID cannot be empty")
        return v

    @property
    def key(self) -> tuple[str, str]:
        """(machine, entity_id) pair identifying this record."""
        return (self.machine, self.entity_id)


class EntityContext(BaseModel):
    """Context handed to rules and commands.

    The machine factory builds it once per transition call; the engine sets
    ``state_to`` for each candidate it evaluates.
    """

    machine: str
    entity_id: str
    state: str
    changetime: datetime
    state_to: str | None = Field(
        default=None,
        description="Target state of the candidate transition being evaluated",
    )
    subject: Any = Field(
        default=None,
        description="Domain object supplied by the machine factory",
    )
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller supplied data for this transition call",
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def for_target(self, state_to: str) -> "EntityContext":
        """Return a copy of this context aimed at a candidate target state."""
        return self.model_copy(update={"state_to": state_to})
