"""In-memory machine graph built by the loader.

A MachineDefinition is immutable for its lifetime: configuration changes
require a fresh load.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from fsmengine.domain.interfaces.capabilities import Command, MachineFactory, Rule
from fsmengine.domain.models.machine import MachineConfig, StateConfig, StateType


@dataclass(frozen=True)
class LoadedTransition:
    """A transition edge with its capabilities resolved."""

    state_from: str
    state_to: str
    rule_ref: str
    rule: Rule = field(repr=False, compare=False)
    command_ref: str
    command: Command = field(repr=False, compare=False)
    priority: int
    index: int
    description: str | None = None

    @property
    def order_key(self) -> tuple[int, int]:
        """Evaluation order: priority first, then declaration index."""
        return (self.priority, self.index)


class MachineDefinition:
    """Directed graph of states and transitions for one machine.

    Attributes:
        name: Machine name.
        description: Optional descriptive text.
        factory_ref: Registry reference of the factory, if configured.
        factory: Factory instance building entity contexts.
        initial_state: Name of the single initial state.
        config: The validated configuration this graph was built from.
    """

    def __init__(
        self,
        config: MachineConfig,
        transitions: Iterable[LoadedTransition],
        factory: MachineFactory,
    ) -> None:
        self.config = config
        self.name = config.machine
        self.description = config.description
        self.factory_ref = config.factory
        self.factory = factory

        self._states: Mapping[str, StateConfig] = MappingProxyType(
            {s.state: s for s in config.states}
        )
        initial = [s.state for s in config.states if s.state_type == StateType.Initial.value]
        self.initial_state = initial[0]

        grouped: dict[str, list[LoadedTransition]] = {name: [] for name in self._states}
        for transition in transitions:
            grouped[transition.state_from].append(transition)
        # Final states never expose outgoing edges
        self._outgoing: Mapping[str, tuple[LoadedTransition, ...]] = MappingProxyType(
            {
                name: ()
                if self._states[name].state_type == StateType.Final.value
                else tuple(sorted(edges, key=lambda t: t.order_key))
                for name, edges in grouped.items()
            }
        )

    def __repr__(self) -> str:
        return f"MachineDefinition(name={self.name!r}, states={list(self._states)!r})"

    @property
    def states(self) -> tuple[str, ...]:
        """State names in declaration order."""
        return tuple(self._states)

    def has_state(self, state: str) -> bool:
        return state in self._states

    def state_type(self, state: str) -> StateType:
        """Return the type of a state.

        Raises:
            KeyError: If the state is not part of the machine.
        """
        return StateType(self._states[state].state_type)

    def is_final(self, state: str) -> bool:
        return self.state_type(state) is StateType.Final

    def outgoing(self, state: str) -> tuple[LoadedTransition, ...]:
        """Outgoing transitions of ``state`` ordered by (priority, declaration)."""
        return self._outgoing.get(state, ())

    def transitions(self) -> list[LoadedTransition]:
        """All transitions, grouped by source state in evaluation order."""
        return [t for edges in self._outgoing.values() for t in edges]
