"""Configuration settings using pydantic-settings."""

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Configuration settings for the state machine engine.

    Settings can be loaded from environment variables or passed as a dictionary.
    Environment variables should be prefixed with 'FSMENGINE_'
    (e.g., FSMENGINE_LOCK_TIMEOUT_SECONDS=5).

    Example:
        ```python
        # From environment variables
        settings = EngineSettings()

        # From dictionary
        settings = EngineSettings(state_store_backend="redis", redis_url="redis://localhost:6379/0")
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="FSMENGINE_",
        case_sensitive=False,
        extra="ignore",
    )

    # StateStore configuration
    state_store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="StateStore implementation used when none is injected",
    )
    redis_url: str | None = Field(
        default=None,
        description="Redis connection URL (falls back to REDIS_URL)",
    )
    redis_key_prefix: str = Field(
        default="fsm:",
        description="Prefix for all keys written to Redis",
    )
    lock_ttl_seconds: float = Field(
        default=30.0,
        description="Expiry of distributed entity locks",
        gt=0,
    )

    # TransitionEngine configuration
    lock_timeout_seconds: float | None = Field(
        default=10.0,
        description="Maximum wait for an entity lock; None waits forever",
        gt=0,
    )
    transition_timeout_seconds: float | None = Field(
        default=None,
        description="Default deadline for a whole transition call; None disables it",
        gt=0,
    )

    # Configuration loading
    machine_config_file: str | None = Field(
        default=None,
        description="YAML/JSON file with machine definitions imported on startup",
    )

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON (False for console output)",
    )

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "EngineSettings":
        """Create settings from a dictionary.

        Args:
            config: Dictionary with configuration values.

        Returns:
            EngineSettings instance.
        """
        return cls(**config)
