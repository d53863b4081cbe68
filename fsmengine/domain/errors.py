"""Error taxonomy for the state machine engine.

Every error raised by the engine derives from FsmError so callers can catch
the whole family at once, while the concrete subclasses tell them what went
wrong and whether the entity was touched.

Example:
    ```python
    try:
        outcome = await engine.transition("order", "123")
    except NoApplicableTransitionError:
        ...  # entity unchanged, nothing recorded
    except TransitionFailedError as e:
        ...  # entity unchanged, failure recorded in history
        print(e.failure.code, e.history_record.id)
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fsmengine.domain.models.history import FailureDetail, HistoryRecord


class FsmError(Exception):
    """Base class for all state machine engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize FsmError.

        Args:
            message: Human-readable error message.
            details: Additional structured error details.
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Human-readable error message."""
        return self.message


class ConfigurationError(FsmError):
    """Raised when a machine definition is malformed or inconsistent.

    Configuration errors are fatal for the machine: no entity operation is
    allowed on a machine whose definition does not validate.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        machine: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Human-readable error message.
            field: Optional field name that failed validation.
            machine: Optional machine the error applies to.
            errors: Individual validation failures, when several were found.
        """
        self.field = field
        self.machine = machine
        self.errors = errors or [message]
        super().__init__(message, details={"field": field, "machine": machine})

    def __str__(self) -> str:
        """Return error message with field name if available."""
        if self.field:
            return f"Configuration error in field '{self.field}': {self.message}"
        return self.message


class NotFoundError(FsmError):
    """Raised when a machine, state or entity does not exist."""


class AlreadyExistsError(FsmError):
    """Raised when creating something that already exists."""


class RuleEvaluationError(FsmError):
    """Raised when a rule fails while being evaluated.

    The transition engine treats it as a rejected candidate and moves on to
    the next transition.
    """

    def __init__(self, message: str, rule: str, state_to: str | None = None) -> None:
        self.rule = rule
        self.state_to = state_to
        super().__init__(message, details={"rule": rule, "state_to": state_to})


class NoApplicableTransitionError(FsmError):
    """Raised when no outgoing transition of the current state accepts."""

    def __init__(
        self,
        message: str,
        machine: str,
        entity_id: str,
        state: str,
        target_state: str | None = None,
        rule_errors: list[RuleEvaluationError] | None = None,
    ) -> None:
        self.machine = machine
        self.entity_id = entity_id
        self.state = state
        self.target_state = target_state
        self.rule_errors = rule_errors or []
        super().__init__(
            message,
            details={
                "machine": machine,
                "entity_id": entity_id,
                "state": state,
                "target_state": target_state,
                "rule_errors": [str(e) for e in self.rule_errors],
            },
        )


class TransitionFailedError(FsmError):
    """Raised when the command of a selected transition fails.

    The entity stays in its current state and the failure is persisted as a
    history record; the original exception is available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        machine: str,
        entity_id: str,
        state_from: str,
        state_to: str,
        failure: FailureDetail,
        history_record: HistoryRecord,
    ) -> None:
        self.machine = machine
        self.entity_id = entity_id
        self.state_from = state_from
        self.state_to = state_to
        self.failure = failure
        self.history_record = history_record
        super().__init__(
            message,
            details={
                "machine": machine,
                "entity_id": entity_id,
                "state_from": state_from,
                "state_to": state_to,
                "code": failure.code,
            },
        )


class CommandError(FsmError):
    """Raised by commands to report a failure with an explicit code."""

    def __init__(self, message: str, code: str = "command_error") -> None:
        self.code = code
        super().__init__(message, details={"code": code})


class StoreError(FsmError):
    """Raised when the underlying store fails.

    A transition that surfaces a StoreError must be assumed not committed.
    """


class ConcurrentModificationError(StoreError):
    """Raised when an entity changed between read and commit."""


class TransitionTimeoutError(FsmError, TimeoutError):
    """Raised when a transition exceeds its deadline before committing."""
