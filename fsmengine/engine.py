"""StateMachineEngine - Main entry point wiring the engine components."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

from fsmengine.domain.components.configuration_store import ConfigurationStore
from fsmengine.domain.components.entity_state_store import EntityStateStore
from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.components.loader import MachineLoader
from fsmengine.domain.components.registry import CapabilityRegistry
from fsmengine.domain.components.transition_engine import TransitionEngine
from fsmengine.domain.components.validator import MachineValidator
from fsmengine.domain.errors import NotFoundError
from fsmengine.domain.interfaces.capabilities import Command, MachineFactory, Rule
from fsmengine.domain.interfaces.observability_manager import ObservabilityManager
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.definition import MachineDefinition
from fsmengine.domain.models.entity import EntityContext, EntityRecord
from fsmengine.domain.models.history import HistoryQuery, HistoryRecord
from fsmengine.domain.models.outcome import ReconciliationReport, TransitionOutcome
from fsmengine.infrastructure.config.settings import EngineSettings
from fsmengine.infrastructure.observability.logger import DefaultObservabilityManager
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore
from fsmengine.infrastructure.state_store.redis_store import RedisStateStore


class StateMachineEngine:
    """Main entry point for library.

    StateMachineEngine wires the configuration store, loader, entity store,
    history log and transition engine around one StateStore. Every entity
    operation loads the machine first, so a machine whose configuration does
    not validate cannot be used.

    Example:
        ```python
        async with StateMachineEngine() as engine:
            engine.register_rule("is-paid", lambda ctx: ctx.attributes.get("paid", False))
            await engine.load_configuration_file("machines.yaml")

            await engine.add_entity("order", "123")
            outcome = await engine.transition("order", "123", attributes={"paid": True})
        ```
    """

    def __init__(
        self,
        state_store: StateStore | None = None,
        observability_manager: ObservabilityManager | None = None,
        config: EngineSettings | dict[str, Any] | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        """Initialize StateMachineEngine with dependencies.

        Args:
            state_store: Optional StateStore implementation. If not provided,
                       the backend named by ``state_store_backend`` is created.
            observability_manager: Optional ObservabilityManager implementation.
                                 If not provided, defaults to DefaultObservabilityManager.
            config: Optional configuration. Can be:
                   - EngineSettings instance
                   - Dictionary with configuration values
                   - None (loads from environment variables)
            registry: Optional CapabilityRegistry shared with other engines.

        Raises:
            ValueError: If configuration is invalid.
        """
        # Load configuration
        if config is None:
            self._config = EngineSettings()
        elif isinstance(config, dict):
            self._config = EngineSettings.from_dict(config)
        elif isinstance(config, EngineSettings):
            self._config = config
        else:
            raise ValueError(
                f"Invalid config type: {type(config)}. Expected EngineSettings, dict, or None"
            )

        # Initialize StateStore (dependency injection support)
        if state_store is None:
            self._state_store = self._create_state_store(self._config)
        else:
            self._state_store = state_store

        # Initialize ObservabilityManager (dependency injection support)
        if observability_manager is None:
            self._observability_manager = DefaultObservabilityManager(
                log_level=self._config.log_level,
                json_format=self._config.json_logs,
            )
        else:
            self._observability_manager = observability_manager

        self._registry = registry or CapabilityRegistry()
        validator = MachineValidator()

        self._configuration = ConfigurationStore(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
            validator=validator,
        )
        self._loader = MachineLoader(
            state_store=self._state_store,
            registry=self._registry,
            observability_manager=self._observability_manager,
            validator=validator,
        )
        # Configuration edits drop the cached definition
        self._configuration.add_listener(self._loader.invalidate)

        self._entity_store = EntityStateStore(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
        )
        self._history_log = HistoryLog(
            state_store=self._state_store,
            observability_manager=self._observability_manager,
        )
        self._transition_engine = TransitionEngine(
            state_store=self._state_store,
            loader=self._loader,
            entity_store=self._entity_store,
            history_log=self._history_log,
            observability_manager=self._observability_manager,
            lock_timeout=self._config.lock_timeout_seconds,
            default_timeout=self._config.transition_timeout_seconds,
        )

    @staticmethod
    def _create_state_store(config: EngineSettings) -> StateStore:
        if config.state_store_backend == "redis":
            return RedisStateStore(
                redis_url=config.redis_url,
                key_prefix=config.redis_key_prefix,
                lock_ttl=config.lock_ttl_seconds,
            )
        return InMemoryStateStore()

    async def __aenter__(self) -> "StateMachineEngine":
        """Async context manager entry.

        Imports ``machine_config_file`` when one is configured.

        Returns:
            Self for use in async with statement.
        """
        if self._config.machine_config_file:
            await self.load_configuration_file(self._config.machine_config_file)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Release the resources held by the state store."""
        await self._state_store.close()

    @property
    def configuration(self) -> ConfigurationStore:
        """Get the ConfigurationStore administering machines."""
        return self._configuration

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def loader(self) -> MachineLoader:
        return self._loader

    @property
    def transition_engine(self) -> TransitionEngine:
        return self._transition_engine

    @property
    def state_store(self) -> StateStore:
        return self._state_store

    @property
    def observability_manager(self) -> ObservabilityManager:
        return self._observability_manager

    def register_rule(
        self,
        ref: str,
        rule: Rule | Callable[[EntityContext], Any],
        replace: bool = False,
    ) -> None:
        """Register a rule and drop cached definitions that may reference it."""
        self._registry.register_rule(ref, rule, replace=replace)
        self._loader.invalidate()

    def register_command(
        self,
        ref: str,
        command: Command | Callable[[EntityContext], Any],
        replace: bool = False,
    ) -> None:
        """Register a command and drop cached definitions that may reference it."""
        self._registry.register_command(ref, command, replace=replace)
        self._loader.invalidate()

    def register_factory(
        self,
        ref: str,
        factory: Callable[[], MachineFactory],
        replace: bool = False,
    ) -> None:
        """Register a machine factory and drop cached definitions."""
        self._registry.register_factory(ref, factory, replace=replace)
        self._loader.invalidate()

    async def load_configuration_file(self, path: str | Path | None = None) -> list[str]:
        """Import machine definitions from a YAML or JSON file.

        Args:
            path: Definition file. If None, FSMENGINE_CONFIG_FILE is used.

        Returns:
            Names of the imported machines.

        Raises:
            ConfigurationError: If the file or any machine in it is invalid.
        """
        return await self._configuration.import_file(path)

    async def load_machine(self, machine: str, refresh: bool = False) -> MachineDefinition:
        """Load, validate and resolve a machine.

        Raises:
            NotFoundError: If the machine does not exist.
            ConfigurationError: If the machine is invalid.
        """
        return await self._loader.load(machine, refresh=refresh)

    async def add_entity(self, machine: str, entity_id: str) -> EntityRecord:
        """Create an entity in the initial state of ``machine``.

        Raises:
            NotFoundError: If the machine does not exist.
            ConfigurationError: If the machine is invalid.
            AlreadyExistsError: If the entity already exists.
        """
        definition = await self._loader.load(machine)
        return await self._entity_store.add(definition, entity_id)

    async def get_entity(self, machine: str, entity_id: str) -> EntityRecord:
        """Return an entity record.

        Raises:
            NotFoundError: If the machine or entity does not exist.
        """
        await self._loader.load(machine)
        return await self._entity_store.get(machine, entity_id)

    async def get_state(self, machine: str, entity_id: str) -> str:
        """Return the current state of an entity."""
        return (await self.get_entity(machine, entity_id)).state

    async def transition(
        self,
        machine: str,
        entity_id: str,
        target_state: str | None = None,
        *,
        attributes: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> TransitionOutcome:
        """Attempt one transition of an entity.

        See TransitionEngine.transition for the full contract.
        """
        return await self._transition_engine.transition(
            machine,
            entity_id,
            target_state,
            attributes=attributes,
            timeout=timeout,
        )

    async def find_entities_by_state(self, machine: str, state: str) -> list[str]:
        """Return the ids of entities of ``machine`` currently in ``state``.

        Raises:
            NotFoundError: If the machine or the state does not exist.
        """
        definition = await self._loader.load(machine)
        if not definition.has_state(state):
            raise NotFoundError(f"State '{state}' does not exist in machine '{machine}'")
        return await self._entity_store.find_by_state(machine, state)

    async def get_history(self, machine: str, entity_id: str) -> list[HistoryRecord]:
        """Return the history of an entity ordered by (changetime, id)."""
        await self._loader.load(machine)
        return await self._history_log.get_history(machine, entity_id)

    async def query_history(
        self, query: HistoryQuery | None = None, **filters: Any
    ) -> list[HistoryRecord]:
        """Return history records matching a query.

        Args:
            query: HistoryQuery instance. If None, one is built from ``filters``.
            **filters: HistoryQuery fields (machine, entity_id, failures_only, ...).
        """
        if query is None:
            query = HistoryQuery(**filters)
        return await self._history_log.query(query)

    async def reconcile(
        self, machine: str, entity_id: str, repair: bool = False
    ) -> ReconciliationReport:
        """Compare an entity's stored state with the state its history leads to.

        Args:
            machine: Machine name.
            entity_id: Entity to check.
            repair: Overwrite the stored state with the derived one when they
                differ. No history record is written for the repair.

        Returns:
            ReconciliationReport listing the problems found.
        """
        definition = await self._loader.load(machine)
        async with self._state_store.entity_lock(
            machine, entity_id, timeout=self._config.lock_timeout_seconds
        ):
            entity = await self._entity_store.get(machine, entity_id)
            records = await self._history_log.get_history(machine, entity_id)
            problems = HistoryLog.verify_chain(entity, records)
            derived = HistoryLog.derive_state(records)
            if derived is not None and not definition.has_state(derived):
                problems.append(f"History leads to unknown state '{derived}'")

            repaired = False
            if (
                repair
                and derived is not None
                and derived != entity.state
                and definition.has_state(derived)
            ):
                await self._entity_store.set_state(entity, derived, None)
                repaired = True
                await self._observability_manager.log(
                    level="WARNING",
                    message="Repaired entity state from history",
                    context={
                        "machine": machine,
                        "entity_id": entity_id,
                        "stored_state": entity.state,
                        "derived_state": derived,
                    },
                )

        return ReconciliationReport(
            machine=machine,
            entity_id=entity_id,
            stored_state=entity.state,
            derived_state=derived,
            history_length=len(records),
            problems=problems,
            repaired=repaired,
        )
