"""structlog-backed observability for the state machine engine."""

import logging
from typing import Any

import structlog

from fsmengine.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)

SENSITIVE_FIELDS = frozenset({"password", "secret", "token", "api_key", "authorization"})
REDACTED = "[REDACTED]"
LOGGER_NAME = "fsmengine"


def sanitize_for_logging(data: Any, redact_keys: frozenset[str] = SENSITIVE_FIELDS) -> Any:
    """Return a copy of ``data`` with sensitive values replaced.

    Caller attributes and factory subjects can carry domain data, so every
    dictionary key matching ``redact_keys`` (case-insensitive) is redacted,
    at any depth. Tuples come back as lists.
    """
    if isinstance(data, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in redact_keys
            else sanitize_for_logging(value, redact_keys)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logging(item, redact_keys) for item in data]
    return data


def configure_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum level written by the stdlib handler.
        json_format: Render JSON lines; False renders colored console output.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=_level_number(log_level), format="%(message)s")


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.upper())
    return number if isinstance(number, int) else logging.INFO


class DefaultObservabilityManager(ObservabilityManager):
    """ObservabilityManager writing events and logs through structlog.

    Events become one ``fsm_event`` log line at INFO carrying the event type,
    the sanitized payload and optional metadata. Log calls keep their message
    and pass the sanitized context as key/value pairs.

    Example:
        ```python
        observability = DefaultObservabilityManager(log_level="DEBUG", json_format=False)
        engine = StateMachineEngine(observability_manager=observability)
        ```
    """

    def __init__(
        self,
        log_level: str = "INFO",
        json_format: bool = True,
        redact_keys: frozenset[str] | None = None,
    ) -> None:
        """Initialize DefaultObservabilityManager.

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            json_format: If True, render JSON lines (production); otherwise
                human-readable console output (development).
            redact_keys: Keys whose values are never logged. Defaults to
                SENSITIVE_FIELDS.
        """
        self._log_level = log_level
        self._json_format = json_format
        self._redact_keys = frozenset(k.lower() for k in (redact_keys or SENSITIVE_FIELDS))
        configure_logging(log_level, json_format)
        self._logger = structlog.get_logger(LOGGER_NAME)

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write an event line.

        Raises:
            ObservabilityError: If the event cannot be rendered or written.
        """
        fields: dict[str, Any] = {
            "event_type": event_type,
            "payload": sanitize_for_logging(payload, self._redact_keys),
        }
        if metadata:
            fields["metadata"] = sanitize_for_logging(metadata, self._redact_keys)
        try:
            self._logger.info("fsm_event", **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to emit {event_type} event: {e}") from e

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Write a log line; unknown level names are logged at INFO.

        Raises:
            ObservabilityError: If the line cannot be rendered or written.
        """
        fields = sanitize_for_logging(context, self._redact_keys) if context else {}
        try:
            self._logger.log(_level_number(level), message, **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to log message: {e}") from e
