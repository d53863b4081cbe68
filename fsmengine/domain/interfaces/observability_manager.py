"""ObservabilityManager interface for engine events and structured logs."""

from abc import ABC, abstractmethod
from typing import Any

from fsmengine.domain.errors import FsmError

EVENT_ENTITY_ADDED = "entity_added"
EVENT_TRANSITION_COMMITTED = "transition_committed"
EVENT_TRANSITION_FAILED = "transition_failed"
EVENT_CONFIGURATION_CHANGED = "configuration_changed"


class ObservabilityError(FsmError):
    """Raised when an event or log line cannot be written."""


class ObservabilityManager(ABC):
    """Sink for the engine's events and log lines.

    Events are emitted after the change they describe has been committed:

    - ``entity_added``: an entity was created in its initial state
    - ``transition_committed``: payload is the TransitionOutcome
    - ``transition_failed``: a command failed and its attempt was recorded
    - ``configuration_changed``: a machine document was edited or imported

    Implementations only need ``emit_event`` and ``log``.
    """

    @abstractmethod
    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Emit an event.

        Raises:
            ObservabilityError: If event emission fails.
        """

    @abstractmethod
    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Log a message with structured context.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            message: Log message.
            context: Optional structured context data.

        Raises:
            ObservabilityError: If logging fails.
        """

    async def emit_safely(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Emit an event; failures are logged at WARNING and never raised.

        Returns:
            True if the event was emitted.
        """
        try:
            await self.emit_event(event_type=event_type, payload=payload, metadata=metadata)
        except Exception as e:
            await self.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={
                    "machine": payload.get("machine"),
                    "entity_id": payload.get("entity_id"),
                    "error_type": type(e).__name__,
                },
            )
            return False
        return True
