"""HistoryRecord data model for the transition audit trail."""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FailureDetail(BaseModel):
    """Code and text describing a failed transition attempt.

    Serialized as JSON into the ``message`` of a failed-attempt history
    record, so applications can display both parts.
    """

    code: str = Field(
        ...,
        description="Machine readable failure code",
        min_length=1,
    )
    message: str = Field(
        default="",
        description="Human readable failure text",
    )

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_exception(cls, error: BaseException) -> "FailureDetail":
        """Build a failure detail from an exception.

        Uses the exception's ``code`` attribute when present and its class
        name otherwise.
        """
        code = getattr(error, "code", None)
        if not isinstance(code, str) or not code:
            code = type(error).__name__
        return cls(code=code, message=str(error) or type(error).__name__)

    def to_message(self) -> str:
        """Serialize to the JSON stored in history records."""
        return json.dumps({"code": self.code, "message": self.message}, sort_keys=True)

    @classmethod
    def from_message(cls, message: str) -> "FailureDetail":
        """Parse a history message; non-JSON messages become code 'unknown'."""
        try:
            data: Any = json.loads(message)
        except ValueError:
            return cls(code="unknown", message=message)
        if not isinstance(data, dict) or not data.get("code"):
            return cls(code="unknown", message=message)
        return cls(code=str(data["code"]), message=str(data.get("message", "")))


class HistoryRecord(BaseModel):
    """One immutable row of an entity's transition history.

    ``state_from == state_to`` is used for exactly two cases: with a message
    it is a failed attempt, without a message a successful self-transition.
    The only record with ``changetime_previous = None`` is the creation record.
    """

    id: int | None = Field(
        default=None,
        description="Surrogate key assigned by the store (monotonic)",
    )
    machine: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    state_from: str = Field(
        ...,
        description="State from which the transition was done",
    )
    state_to: str = Field(
        ...,
        description="State to which the transition was done",
    )
    changetime: datetime = Field(
        ...,
        description="When the transition (or attempt) was made",
    )
    changetime_previous: datetime | None = Field(
        default=None,
        description="Entity changetime before this record; None only for the creation record",
    )
    message: str | None = Field(
        default=None,
        description="Serialized FailureDetail for failed attempts, None otherwise",
    )

    model_config = ConfigDict(
        frozen=True,  # Immutable audit trail
    )

    @property
    def is_creation(self) -> bool:
        """Whether this is the record written when the entity was added."""
        return self.changetime_previous is None

    @property
    def is_failure(self) -> bool:
        """Whether this record captures a failed attempt."""
        return self.state_from == self.state_to and bool(self.message)

    @property
    def is_self_transition(self) -> bool:
        """Whether this record is a successful self-transition."""
        return (
            self.state_from == self.state_to
            and not self.message
            and not self.is_creation
        )

    @property
    def failure(self) -> FailureDetail | None:
        """Parsed failure detail for failed attempts."""
        if not self.is_failure or self.message is None:
            return None
        return FailureDetail.from_message(self.message)

    def sort_key(self) -> tuple[datetime, int]:
        """Ordering key: changetime, then surrogate id."""
        return (self.changetime, self.id if self.id is not None else 0)


class HistoryQuery(BaseModel):
    """Query parameters for history lookups.

    Attributes:
        machine: Filter by machine. If None, matches all machines.
        entity_id: Filter by entity. If None, matches all entities.
        state_to: Filter by the state entered.
        failures_only: Only return failed-attempt records.
        timestamp_from: Start of changetime range filter.
        timestamp_to: End of changetime range filter.
        limit: Maximum number of results to return.
        offset: Number of results to skip.
    """

    machine: str | None = Field(default=None)
    entity_id: str | None = Field(default=None)
    state_to: str | None = Field(default=None)
    failures_only: bool = Field(default=False)
    timestamp_from: datetime | None = Field(default=None)
    timestamp_to: datetime | None = Field(default=None)
    limit: int | None = Field(default=None, ge=1)
    offset: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)

    def matches(self, record: HistoryRecord) -> bool:
        """Check if a history record matches the filters."""
        if self.machine is not None and record.machine != self.machine:
            return False
        if self.entity_id is not None and record.entity_id != self.entity_id:
            return False
        if self.state_to is not None and record.state_to != self.state_to:
            return False
        if self.failures_only and not record.is_failure:
            return False
        if self.timestamp_from is not None and record.changetime < self.timestamp_from:
            return False
        return not (self.timestamp_to is not None and record.changetime > self.timestamp_to)

    def paginate(self, records: list[HistoryRecord]) -> list[HistoryRecord]:
        """Apply offset and limit to an ordered result list."""
        if self.offset is not None:
            records = records[self.offset :]
        if self.limit is not None:
            records = records[: self.limit]
        return records
