"""MachineValidator component checking machine configurations before use."""

import re
from collections import Counter

from fsmengine.domain.errors import ConfigurationError
from fsmengine.domain.models.machine import MachineConfig, StateType

STATE_NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

_STATE_TYPES = frozenset(t.value for t in StateType)


class MachineValidator:
    """Validates the structural invariants of a machine configuration.

    All violations are collected and reported together in a single
    ConfigurationError, so an administrator can fix a definition in one pass.
    """

    def validate(self, config: MachineConfig) -> None:
        """Validate a machine configuration.

        Args:
            config: Machine configuration to check.

        Raises:
            ConfigurationError: If any invariant is violated. ``errors`` lists
                every violation found.
        """
        errors = self.collect_errors(config)
        if errors:
            raise ConfigurationError(
                f"Machine '{config.machine}' is invalid: " + "; ".join(errors),
                machine=config.machine,
                errors=errors,
            )

    def collect_errors(self, config: MachineConfig) -> list[str]:
        """Return every invariant violation of ``config`` (empty when valid)."""
        errors: list[str] = []
        errors.extend(self._check_states(config))
        errors.extend(self._check_transitions(config))
        return errors

    def is_valid(self, config: MachineConfig) -> bool:
        return not self.collect_errors(config)

    def _check_states(self, config: MachineConfig) -> list[str]:
        errors: list[str] = []
        names = Counter(s.state for s in config.states)

        for name, count in names.items():
            if count > 1:
                errors.append(f"State '{name}' is declared {count} times")

        for state in config.states:
            if not STATE_NAME_PATTERN.match(state.state):
                errors.append(
                    f"State name '{state.state}' must be lowercase alphanumerics "
                    "separated by single hyphens"
                )
            if state.state_type not in _STATE_TYPES:
                errors.append(
                    f"State '{state.state}' has unknown type '{state.state_type}' "
                    f"(expected one of {', '.join(sorted(_STATE_TYPES))})"
                )

        initial = [s.state for s in config.states if s.state_type == StateType.Initial.value]
        if not initial:
            errors.append("Machine has no initial state")
        elif len(initial) > 1:
            errors.append(f"Machine has {len(initial)} initial states: {', '.join(initial)}")
        return errors

    def _check_transitions(self, config: MachineConfig) -> list[str]:
        errors: list[str] = []
        states = {s.state: s for s in config.states}
        seen: set[tuple[str, str]] = set()

        for transition in config.transitions:
            label = f"{transition.state_from} -> {transition.state_to}"
            pair = (transition.state_from, transition.state_to)
            if pair in seen:
                errors.append(f"Transition {label} is declared more than once")
            seen.add(pair)

            for endpoint in pair:
                if endpoint not in states:
                    errors.append(f"Transition {label} references unknown state '{endpoint}'")

            if not transition.rule.strip():
                errors.append(f"Transition {label} has an empty rule reference")
            if not transition.command.strip():
                errors.append(f"Transition {label} has an empty command reference")
        return errors
