"""MachineLoader component building executable machine definitions."""

import asyncio

from fsmengine.domain.components.registry import CapabilityRegistry
from fsmengine.domain.components.validator import MachineValidator
from fsmengine.domain.errors import ConfigurationError, NotFoundError
from fsmengine.domain.interfaces.observability_manager import ObservabilityManager
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.definition import LoadedTransition, MachineDefinition
from fsmengine.domain.models.machine import MachineConfig


class MachineLoader:
    """Reads, validates and resolves machine configurations.

    Successful loads are cached per machine name until invalidated. A failed
    load is never cached, so no partially resolved machine is ever handed out.
    A load that overlaps an invalidation of its machine is returned but not
    cached.
    """

    def __init__(
        self,
        state_store: StateStore,
        registry: CapabilityRegistry,
        observability_manager: ObservabilityManager,
        validator: MachineValidator | None = None,
    ) -> None:
        """Initialize MachineLoader.

        Args:
            state_store: StateStore holding machine documents.
            registry: Registry resolving rule, command and factory references.
            observability_manager: ObservabilityManager for events and logging.
            validator: Validator applied before resolution. Defaults to MachineValidator().
        """
        self._state_store = state_store
        self._registry = registry
        self._observability = observability_manager
        self._validator = validator or MachineValidator()
        self._cache: dict[str, MachineDefinition] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = asyncio.Lock()

    async def load(self, machine: str, refresh: bool = False) -> MachineDefinition:
        """Return the executable definition of a machine.

        Args:
            machine: Machine name.
            refresh: Bypass and replace the cached definition.

        Returns:
            The immutable MachineDefinition.

        Raises:
            NotFoundError: If the machine does not exist.
            ConfigurationError: If the machine is invalid or references
                unknown rules, commands or factories.
        """
        if not refresh:
            cached = self._cache.get(machine)
            if cached is not None:
                return cached

        async with self._lock:
            if not refresh:
                cached = self._cache.get(machine)
                if cached is not None:
                    return cached

            generation = self._generation(machine)
            config = await self._state_store.get_machine_config(machine)
            if config is None:
                raise NotFoundError(f"Machine '{machine}' does not exist")

            try:
                definition = self.build(config)
            except ConfigurationError as e:
                await self._observability.log(
                    level="ERROR",
                    message=f"Failed to load machine '{machine}'",
                    context={"machine": machine, "errors": e.errors},
                )
                raise

            if self._generation(machine) == generation:
                self._cache[machine] = definition

        await self._observability.log(
            level="DEBUG",
            message=f"Loaded machine '{machine}'",
            context={
                "machine": machine,
                "states": len(definition.states),
                "transitions": len(config.transitions),
            },
        )
        return definition

    def build(self, config: MachineConfig) -> MachineDefinition:
        """Validate ``config`` and resolve its capabilities.

        Raises:
            ConfigurationError: If validation or resolution fails. Unresolvable
                references are collected and reported together.
        """
        self._validator.validate(config)

        errors: list[str] = []
        transitions: list[LoadedTransition] = []
        for index, transition in enumerate(config.transitions):
            label = f"{transition.state_from} -> {transition.state_to}"
            try:
                rule = self._registry.resolve_rule(transition.rule, machine=config.machine)
            except ConfigurationError as e:
                errors.append(f"Transition {label}: {e.message}")
                continue
            try:
                command = self._registry.resolve_command(
                    transition.command, machine=config.machine
                )
            except ConfigurationError as e:
                errors.append(f"Transition {label}: {e.message}")
                continue
            transitions.append(
                LoadedTransition(
                    state_from=transition.state_from,
                    state_to=transition.state_to,
                    rule_ref=transition.rule,
                    rule=rule,
                    command_ref=transition.command,
                    command=command,
                    priority=transition.priority,
                    index=index,
                    description=transition.description,
                )
            )

        factory = None
        try:
            factory = self._registry.create_factory(config.factory, machine=config.machine)
        except ConfigurationError as e:
            errors.append(e.message)

        if errors or factory is None:
            raise ConfigurationError(
                f"Machine '{config.machine}' cannot be resolved: " + "; ".join(errors),
                machine=config.machine,
                errors=errors,
            )
        return MachineDefinition(config, transitions, factory)

    def invalidate(self, machine: str | None = None) -> None:
        """Drop the cached definition of ``machine``, or of all machines."""
        if machine is None:
            self._epoch += 1
            self._cache.clear()
        else:
            self._generations[machine] = self._generations.get(machine, 0) + 1
            self._cache.pop(machine, None)

    def is_cached(self, machine: str) -> bool:
        return machine in self._cache

    def _generation(self, machine: str) -> tuple[int, int]:
        return (self._epoch, self._generations.get(machine, 0))
