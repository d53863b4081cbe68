"""ConfigurationStore component for administering machine definitions."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

from fsmengine.domain.components.validator import MachineValidator
from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConfigurationError,
    NotFoundError,
)
from fsmengine.domain.interfaces.observability_manager import (
    EVENT_CONFIGURATION_CHANGED,
    ObservabilityManager,
)
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.machine import (
    DEFAULT_COMMAND,
    DEFAULT_PRIORITY,
    DEFAULT_RULE,
    MachineConfig,
    StateConfig,
    StateType,
    TransitionConfig,
)
from fsmengine.infrastructure.config.file_loader import MachineFileLoader

ChangeListener = Callable[[str], Awaitable[None] | None]


class ConfigurationStore:
    """Administers machines, states and transitions.

    Edits are serialized by a single asyncio.Lock. Intermediate documents may
    be invalid (for instance a machine without an initial state yet); the
    loader validates a machine before any entity uses it. Every change is
    reported to the registered listeners with the machine name.
    """

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
        validator: MachineValidator | None = None,
    ) -> None:
        """Initialize ConfigurationStore.

        Args:
            state_store: StateStore persisting machine documents and entities.
            observability_manager: ObservabilityManager for events and logging.
            validator: Validator used by import_file. Defaults to MachineValidator().
        """
        self._state_store = state_store
        self._observability = observability_manager
        self._validator = validator or MachineValidator()
        self._lock = asyncio.Lock()
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with the machine name after each change."""
        self._listeners.append(listener)

    async def define_machine(
        self,
        machine: str,
        description: str | None = None,
        factory: str | None = None,
    ) -> MachineConfig:
        """Create an empty machine.

        Raises:
            AlreadyExistsError: If a machine with this name exists.
        """
        async with self._lock:
            if await self._state_store.get_machine_config(machine) is not None:
                raise AlreadyExistsError(f"Machine '{machine}' already exists")
            config = MachineConfig(machine=machine, description=description, factory=factory)
            await self._state_store.save_machine_config(config)
        await self._changed(config.machine, "machine_defined")
        return config

    async def add_state(
        self,
        machine: str,
        state: str,
        state_type: StateType | str = StateType.Normal,
        description: str | None = None,
    ) -> MachineConfig:
        """Add a state to an existing machine.

        Raises:
            NotFoundError: If the machine does not exist.
            AlreadyExistsError: If the machine already has this state.
        """
        state_type = state_type.value if isinstance(state_type, StateType) else state_type
        async with self._lock:
            config = await self._require(machine)
            if config.get_state(state.strip()) is not None:
                raise AlreadyExistsError(f"State '{state}' already exists in machine '{machine}'")
            new_state = StateConfig(state=state, state_type=state_type, description=description)
            config = config.model_copy(update={"states": [*config.states, new_state]})
            await self._state_store.save_machine_config(config)
        await self._changed(machine, "state_added")
        return config

    async def add_transition(
        self,
        machine: str,
        state_from: str,
        state_to: str,
        rule: str = DEFAULT_RULE,
        command: str = DEFAULT_COMMAND,
        priority: int = DEFAULT_PRIORITY,
        description: str | None = None,
    ) -> MachineConfig:
        """Add a transition to an existing machine.

        Raises:
            NotFoundError: If the machine or one of the endpoints does not exist.
            AlreadyExistsError: If the (state_from, state_to) pair already exists.
        """
        async with self._lock:
            config = await self._require(machine)
            transition = TransitionConfig(
                state_from=state_from,
                state_to=state_to,
                rule=rule,
                command=command,
                priority=priority,
                description=description,
            )
            for endpoint in (transition.state_from, transition.state_to):
                if config.get_state(endpoint) is None:
                    raise NotFoundError(f"State '{endpoint}' does not exist in machine '{machine}'")
            if config.get_transition(transition.state_from, transition.state_to) is not None:
                raise AlreadyExistsError(
                    f"Transition {transition.state_from} -> {transition.state_to} "
                    f"already exists in machine '{machine}'"
                )
            config = config.model_copy(update={"transitions": [*config.transitions, transition]})
            await self._state_store.save_machine_config(config)
        await self._changed(machine, "transition_added")
        return config

    async def save_machine(self, config: MachineConfig) -> MachineConfig:
        """Create or replace a whole machine document.

        Raises:
            ConfigurationError: If the new document drops a state that
                entities currently occupy.
        """
        async with self._lock:
            await self._check_occupied_states(config)
            await self._state_store.save_machine_config(config)
        await self._changed(config.machine, "machine_saved")
        return config

    async def get_machine(self, machine: str) -> MachineConfig:
        """Return the stored document of a machine.

        Raises:
            NotFoundError: If the machine does not exist.
        """
        return await self._require(machine)

    async def list_machines(self) -> list[str]:
        return await self._state_store.list_machine_names()

    async def import_file(self, path: str | Path | None = None) -> list[str]:
        """Import machine definitions from a YAML or JSON file.

        Every machine in the file is validated before any of them is saved,
        so a file with one broken machine changes nothing.

        Args:
            path: Definition file. If None, FSMENGINE_CONFIG_FILE is used.

        Returns:
            Names of the imported machines, in file order.

        Raises:
            ConfigurationError: If the file cannot be parsed or any machine is
                invalid or drops occupied states.
        """
        configs = MachineFileLoader(path).load_machines()
        for config in configs:
            self._validator.validate(config)

        async with self._lock:
            for config in configs:
                await self._check_occupied_states(config)
            for config in configs:
                await self._state_store.save_machine_config(config)

        names = [config.machine for config in configs]
        for name in names:
            await self._changed(name, "machine_imported")
        await self._observability.log(
            level="INFO",
            message="Imported machine definitions",
            context={"machines": names, "count": len(names)},
        )
        return names

    async def _require(self, machine: str) -> MachineConfig:
        config = await self._state_store.get_machine_config(machine)
        if config is None:
            raise NotFoundError(f"Machine '{machine}' does not exist")
        return config

    async def _check_occupied_states(self, config: MachineConfig) -> None:
        current = await self._state_store.get_machine_config(config.machine)
        if current is None:
            return
        removed = set(current.state_names()) - set(config.state_names())
        occupied = []
        for state in sorted(removed):
            if await self._state_store.find_entity_ids(config.machine, state):
                occupied.append(state)
        if occupied:
            raise ConfigurationError(
                f"Cannot remove states occupied by entities: {', '.join(occupied)}",
                field="states",
                machine=config.machine,
            )

    async def _changed(self, machine: str, event_type: str) -> None:
        for listener in list(self._listeners):
            result = listener(machine)
            if result is not None:
                await result

        await self._observability.emit_safely(
            EVENT_CONFIGURATION_CHANGED, {"machine": machine, "change": event_type}
        )
