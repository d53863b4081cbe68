"""Machine configuration models: machines, states and transitions.

These models describe configuration as it is persisted. They only enforce
field shapes; cross-field invariants (exactly one initial state, referential
integrity of transitions, ...) are checked by the MachineValidator when a
machine is loaded, so that administrative edits can pass through
intermediate states.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_RULE = "true"
DEFAULT_COMMAND = "null"
DEFAULT_PRIORITY = 1


class StateType(str, Enum):
    """Enumeration of state types."""

    Initial = "initial"
    """Entry point of the machine; exactly one per machine."""

    Normal = "normal"
    """Intermediate state."""

    Final = "final"
    """Terminal state without outgoing transitions."""


class StateConfig(BaseModel):
    """A named state of a machine."""

    state: str = Field(
        ...,
        description="State name, lowercase and hyphen separated (e.g. 'my-state')",
        min_length=1,
    )
    state_type: str = Field(
        default=StateType.Normal.value,
        description="One of initial, normal or final",
    )
    description: str | None = Field(
        default=None,
        description="Optional descriptive text",
    )

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )


class TransitionConfig(BaseModel):
    """A rule-guarded, command-executing edge between two states."""

    state_from: str = Field(
        ...,
        description="State this transition leaves",
        min_length=1,
    )
    state_to: str = Field(
        ...,
        description="State this transition enters",
        min_length=1,
    )
    rule: str = Field(
        default=DEFAULT_RULE,
        description="Registry reference of the guarding rule",
    )
    command: str = Field(
        default=DEFAULT_COMMAND,
        description="Registry reference of the command to execute",
    )
    priority: int = Field(
        default=DEFAULT_PRIORITY,
        description="Evaluation order among transitions sharing state_from (lower first)",
    )
    description: str | None = Field(
        default=None,
        description="Optional descriptive text",
    )

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )


class MachineConfig(BaseModel):
    """Complete persisted definition of one machine.

    Example:
        ```python
        config = MachineConfig(
            machine="order",
            states=[
                StateConfig(state="new", state_type="initial"),
                StateConfig(state="paid"),
                StateConfig(state="shipped", state_type="final"),
            ],
            transitions=[
                TransitionConfig(state_from="new", state_to="paid"),
                TransitionConfig(state_from="paid", state_to="shipped"),
            ],
        )
        ```
    """

    machine: str = Field(
        ...,
        description="Unique machine name",
        min_length=1,
    )
    description: str | None = Field(
        default=None,
        description="Optional descriptive text",
    )
    factory: str | None = Field(
        default=None,
        description="Registry reference of the MachineFactory building entity contexts",
    )
    states: list[StateConfig] = Field(
        default_factory=list,
        description="States of the machine",
    )
    transitions: list[TransitionConfig] = Field(
        default_factory=list,
        description="Transitions of the machine, in declaration order",
    )

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
    )

    def state_names(self) -> list[str]:
        """Return the state names in declaration order."""
        return [s.state for s in self.states]

    def get_state(self, state: str) -> StateConfig | None:
        """Return the state config with the given name, if declared."""
        for candidate in self.states:
            if candidate.state == state:
                return candidate
        return None

    def get_transition(self, state_from: str, state_to: str) -> TransitionConfig | None:
        """Return the transition between two states, if declared."""
        for candidate in self.transitions:
            if candidate.state_from == state_from and candidate.state_to == state_to:
                return candidate
        return None
