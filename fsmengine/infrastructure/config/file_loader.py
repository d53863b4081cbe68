"""Machine definition file loader for YAML and JSON files.

Expected layout:

```yaml
machines:
  - machine: order
    description: Order lifecycle
    states:
      - {state: new, state_type: initial}
      - {state: paid}
      - {state: shipped, state_type: final}
    transitions:
      - {state_from: new, state_to: paid, rule: is-paid, command: "null", priority: 1}
      - {state_from: paid, state_to: shipped}
```
"""

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from fsmengine.domain.errors import ConfigurationError
from fsmengine.domain.models.machine import (
    DEFAULT_COMMAND,
    DEFAULT_RULE,
    MachineConfig,
    StateConfig,
    TransitionConfig,
)

CONFIG_FILE_ENV_VAR = "FSMENGINE_CONFIG_FILE"
TOP_LEVEL_KEYS = frozenset({"machines"})


def _parse_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML format: {e}") from e


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON format: {e}") from e


_PARSERS: dict[str, Callable[[str], Any]] = {
    ".yaml": _parse_yaml,
    ".yml": _parse_yaml,
    ".json": _parse_json,
}


class MachineFileLoader:
    """Loads machine definitions from YAML or JSON files.

    Validates file format and structure; semantic validation of each machine
    (initial state, referential integrity, ...) is left to MachineValidator.
    """

    def __init__(self, config_file_path: str | Path | None = None) -> None:
        """Initialize MachineFileLoader.

        Args:
            config_file_path: Path to the definition file. If None, attempts to
                            load from FSMENGINE_CONFIG_FILE environment variable.

        Raises:
            ConfigurationError: If no path is available or the file does not exist.
        """
        if config_file_path is None:
            config_file_path = os.getenv(CONFIG_FILE_ENV_VAR)
            if not config_file_path:
                raise ConfigurationError(
                    f"Configuration file path not provided and {CONFIG_FILE_ENV_VAR} "
                    "environment variable is not set"
                )

        self._config_path = Path(config_file_path)
        if not self._config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self._config_path}")

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> dict[str, Any]:
        """Read and parse the file into its top-level mapping.

        The parser is chosen by extension (.yaml, .yml or .json); an empty
        YAML document yields an empty mapping.

        Raises:
            ConfigurationError: If the extension is unsupported, the file
                cannot be read, or its content is not a mapping.
        """
        suffix = self._config_path.suffix.lower()
        parser = _PARSERS.get(suffix)
        if parser is None:
            raise ConfigurationError(
                f"Unsupported configuration file format: {suffix or '(none)'}. "
                f"Supported formats: {', '.join(_PARSERS)}"
            )
        try:
            text = self._config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read {self._config_path}: {e}") from e

        data = parser(text)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"{self._config_path.name} must contain a mapping at the top level, "
                f"found {type(data).__name__}"
            )
        return data

    def load_machines(self) -> list[MachineConfig]:
        """Load, check and parse all machine definitions of the file."""
        config = self.load()
        self.validate_structure(config)
        return self.parse_machines(config)

    @staticmethod
    def validate_structure(config: dict[str, Any]) -> None:
        """Check the top level: only a ``machines`` list is allowed.

        Raises:
            ConfigurationError: On unknown keys or a non-list ``machines``.
        """
        unknown = sorted(set(config) - TOP_LEVEL_KEYS)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration key: '{unknown[0]}'. "
                f"Allowed keys: {', '.join(sorted(TOP_LEVEL_KEYS))}",
                field=unknown[0],
            )
        if not isinstance(config.get("machines", []), list):
            raise ConfigurationError("Configuration 'machines' must be a list", field="machines")

    def parse_machines(self, config: dict[str, Any]) -> list[MachineConfig]:
        """Parse machine definitions from loaded configuration.

        Returns:
            One MachineConfig per machine, in file order.

        Raises:
            ConfigurationError: If a machine entry is malformed or a machine
                name appears twice.
        """
        parsed: list[MachineConfig] = []
        seen: set[str] = set()
        for idx, machine_config in enumerate(config.get("machines", [])):
            field = f"machines[{idx}]"
            if not isinstance(machine_config, dict):
                raise ConfigurationError(
                    f"Machine configuration at index {idx} must be a dictionary", field=field
                )
            name = machine_config.get("machine")
            if not isinstance(name, str) or not name.strip():
                raise ConfigurationError(
                    f"Machine configuration at index {idx} has invalid 'machine' (must be non-empty string)",
                    field=f"{field}.machine",
                )
            if name.strip() in seen:
                raise ConfigurationError(
                    f"Machine '{name}' is defined more than once", field=f"{field}.machine"
                )
            seen.add(name.strip())

            states = self._parse_list(machine_config, "states", field)
            transitions = self._parse_list(machine_config, "transitions", field)
            try:
                parsed.append(
                    MachineConfig(
                        machine=name,
                        description=machine_config.get("description"),
                        factory=machine_config.get("factory"),
                        states=[StateConfig(**s) for s in states],
                        transitions=[
                            TransitionConfig(**self._normalize_transition(t)) for t in transitions
                        ],
                    )
                )
            except (TypeError, ValidationError) as e:
                raise ConfigurationError(
                    f"Machine configuration '{name}' is invalid: {e}", field=field, machine=name
                ) from e
        return parsed

    @staticmethod
    def _parse_list(machine_config: dict[str, Any], key: str, field: str) -> list[dict[str, Any]]:
        items = machine_config.get(key) or []
        if not isinstance(items, list):
            raise ConfigurationError(f"'{key}' must be a list", field=f"{field}.{key}")
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                raise ConfigurationError(
                    f"Entry at index {idx} must be a dictionary", field=f"{field}.{key}[{idx}]"
                )
        return items

    @staticmethod
    def _normalize_transition(transition: dict[str, Any]) -> dict[str, Any]:
        # Unquoted `rule: true` / `command: null` arrive as YAML scalars
        normalized = dict(transition)
        for key, default in (("rule", DEFAULT_RULE), ("command", DEFAULT_COMMAND)):
            value = normalized.get(key)
            if value is None:
                normalized[key] = default
            elif isinstance(value, bool):
                normalized[key] = "true" if value else "false"
        return normalized
