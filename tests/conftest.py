"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from fsmengine.domain.components.registry import CapabilityRegistry
from fsmengine.domain.interfaces.observability_manager import ObservabilityManager
from fsmengine.domain.models.machine import MachineConfig, StateConfig, TransitionConfig
from fsmengine.engine import StateMachineEngine
from fsmengine.infrastructure.config.settings import EngineSettings
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore

# Load .env file from project root before running tests (REDIS_URL, ...)
project_root = Path(__file__).parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)


class RecordingObservabilityManager(ObservabilityManager):
    """ObservabilityManager keeping events and logs in memory."""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self.logs: list[dict] = []
        self.emit_error: Exception | None = None

    async def emit_event(
        self,
        event_type: str,
        payload: dict,
        metadata: dict | None = None,
    ) -> None:
        if self.emit_error:
            raise self.emit_error
        self.events.append({
            "event_type": event_type,
            "payload": payload,
            "metadata": metadata or {},
        })

    async def log(
        self,
        level: str,
        message: str,
        context: dict | None = None,
    ) -> None:
        self.logs.append({
            "level": level,
            "message": message,
            "context": context or {},
        })

    def event_types(self) -> list[str]:
        return [e["event_type"] for e in self.events]


def make_order_config(
    paid_rule: str = "true",
    ship_command: str = "null",
) -> MachineConfig:
    """The order lifecycle machine: new -> paid -> shipped (final)."""
    return MachineConfig(
        machine="order",
        description="Order lifecycle",
        states=[
            StateConfig(state="new", state_type="initial"),
            StateConfig(state="paid"),
            StateConfig(state="shipped", state_type="final"),
        ],
        transitions=[
            TransitionConfig(state_from="new", state_to="paid", rule=paid_rule),
            TransitionConfig(state_from="paid", state_to="shipped", command=ship_command),
        ],
    )


@pytest.fixture
def observability() -> RecordingObservabilityManager:
    return RecordingObservabilityManager()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def registry() -> CapabilityRegistry:
    return CapabilityRegistry()


@pytest.fixture
def order_config() -> MachineConfig:
    return make_order_config()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        state_store_backend="memory",
        lock_timeout_seconds=2.0,
        transition_timeout_seconds=None,
        machine_config_file=None,
    )


@pytest.fixture
async def engine(
    state_store: InMemoryStateStore,
    observability: RecordingObservabilityManager,
    registry: CapabilityRegistry,
    settings: EngineSettings,
) -> StateMachineEngine:
    """Engine over an in-memory store with the order machine saved."""
    engine = StateMachineEngine(
        state_store=state_store,
        observability_manager=observability,
        config=settings,
        registry=registry,
    )
    await engine.configuration.save_machine(make_order_config())
    return engine


@pytest.fixture
def order_config_factory():
    """Build order machine variants with other rule/command references."""
    return make_order_config
