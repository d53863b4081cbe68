"""CapabilityRegistry component mapping configuration references to capabilities."""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from fsmengine.domain.errors import ConfigurationError
from fsmengine.domain.interfaces.capabilities import (
    Command,
    DefaultMachineFactory,
    MachineFactory,
    Rule,
)
from fsmengine.domain.models.entity import EntityContext
from fsmengine.domain.models.history import FailureDetail


class TrueRule(Rule):
    """Always allows the transition."""

    async def evaluate(self, context: EntityContext) -> bool:
        return True


class FalseRule(Rule):
    """Never allows the transition."""

    async def evaluate(self, context: EntityContext) -> bool:
        return False


class NullCommand(Command):
    """Does nothing."""

    async def execute(self, context: EntityContext) -> None:
        return None


def _is_async(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


async def _invoke(func: Callable[[EntityContext], Any], context: EntityContext) -> Any:
    if _is_async(func):
        result = func(context)
    else:
        result = await asyncio.to_thread(func, context)
    if inspect.isawaitable(result):
        result = await result
    return result


class CallableRule(Rule):
    """Adapts a plain (sync or async) callable to the Rule interface.

    Sync callables run in a worker thread, so a blocking rule holds neither
    the event loop nor the call deadline.
    """

    def __init__(self, func: Callable[[EntityContext], Any]) -> None:
        self._func = func

    def __repr__(self) -> str:
        return f"CallableRule({getattr(self._func, '__name__', self._func)!r})"

    async def evaluate(self, context: EntityContext) -> bool:
        return bool(await _invoke(self._func, context))


class CallableCommand(Command):
    """Adapts a plain (sync or async) callable to the Command interface.

    Sync callables run in a worker thread, like CallableRule.
    """

    def __init__(self, func: Callable[[EntityContext], Any]) -> None:
        self._func = func

    def __repr__(self) -> str:
        return f"CallableCommand({getattr(self._func, '__name__', self._func)!r})"

    async def execute(self, context: EntityContext) -> FailureDetail | bool | None:
        return await _invoke(self._func, context)  # type: ignore[no-any-return]


BUILTIN_RULES: dict[str, Callable[[], Rule]] = {
    "true": TrueRule,
    "false": FalseRule,
}
BUILTIN_COMMANDS: dict[str, Callable[[], Command]] = {
    "null": NullCommand,
}


class CapabilityRegistry:
    """Maps configuration references to rules, commands and machine factories.

    Rules and commands are registered as instances (or plain callables,
    which are wrapped). Factories are registered as zero-argument callables
    (typically classes) so the loader can construct one instance per load.
    The built-in rules ``true``/``false`` and command ``null`` are always
    available.

    Example:
        ```python
        registry = CapabilityRegistry()
        registry.register_rule("is-paid", lambda ctx: ctx.subject.balance == 0)
        registry.register_command("send-mail", SendMailCommand(mailer))
        registry.register_factory("orders", OrderFactory)
        ```
    """

    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {ref: factory() for ref, factory in BUILTIN_RULES.items()}
        self._commands: dict[str, Command] = {
            ref: factory() for ref, factory in BUILTIN_COMMANDS.items()
        }
        self._factories: dict[str, Callable[[], MachineFactory]] = {}

    def register_rule(
        self,
        ref: str,
        rule: Rule | Callable[[EntityContext], Any],
        replace: bool = False,
    ) -> None:
        """Register a rule under a configuration reference.

        Raises:
            ValueError: If the reference is empty or already registered and
                ``replace`` is False.
            TypeError: If ``rule`` is neither a Rule nor callable.
        """
        self._check_ref(ref, self._rules, "Rule", replace)
        if isinstance(rule, Rule):
            self._rules[ref] = rule
        elif callable(rule):
            self._rules[ref] = CallableRule(rule)
        else:
            raise TypeError(f"Rule '{ref}' must be a Rule instance or callable, got {type(rule)}")

    def register_command(
        self,
        ref: str,
        command: Command | Callable[[EntityContext], Any],
        replace: bool = False,
    ) -> None:
        """Register a command under a configuration reference.

        Raises:
            ValueError: If the reference is empty or already registered and
                ``replace`` is False.
            TypeError: If ``command`` is neither a Command nor callable.
        """
        self._check_ref(ref, self._commands, "Command", replace)
        if isinstance(command, Command):
            self._commands[ref] = command
        elif callable(command):
            self._commands[ref] = CallableCommand(command)
        else:
            raise TypeError(
                f"Command '{ref}' must be a Command instance or callable, got {type(command)}"
            )

    def register_factory(
        self,
        ref: str,
        factory: Callable[[], MachineFactory],
        replace: bool = False,
    ) -> None:
        """Register a machine factory constructor under a configuration reference."""
        self._check_ref(ref, self._factories, "Factory", replace)
        if not callable(factory):
            raise TypeError(f"Factory '{ref}' must be callable, got {type(factory)}")
        self._factories[ref] = factory

    def has_rule(self, ref: str) -> bool:
        return ref in self._rules

    def has_command(self, ref: str) -> bool:
        return ref in self._commands

    def resolve_rule(self, ref: str, machine: str | None = None) -> Rule:
        """Return the rule registered under ``ref``.

        Raises:
            ConfigurationError: If no rule is registered under ``ref``.
        """
        try:
            return self._rules[ref]
        except KeyError:
            raise ConfigurationError(
                f"Unknown rule reference '{ref}'", field="rule", machine=machine
            ) from None

    def resolve_command(self, ref: str, machine: str | None = None) -> Command:
        """Return the command registered under ``ref``.

        Raises:
            ConfigurationError: If no command is registered under ``ref``.
        """
        try:
            return self._commands[ref]
        except KeyError:
            raise ConfigurationError(
                f"Unknown command reference '{ref}'", field="command", machine=machine
            ) from None

    def create_factory(self, ref: str | None, machine: str | None = None) -> MachineFactory:
        """Construct the machine factory registered under ``ref``.

        A machine without a factory reference gets the DefaultMachineFactory.

        Raises:
            ConfigurationError: If the reference is unknown or construction
                does not produce a MachineFactory.
        """
        if ref is None:
            return DefaultMachineFactory()
        try:
            constructor = self._factories[ref]
        except KeyError:
            raise ConfigurationError(
                f"Unknown factory reference '{ref}'", field="factory", machine=machine
            ) from None
        try:
            factory = constructor()
        except Exception as e:
            raise ConfigurationError(
                f"Factory '{ref}' could not be constructed: {e}", field="factory", machine=machine
            ) from e
        if not isinstance(factory, MachineFactory):
            raise ConfigurationError(
                f"Factory '{ref}' produced {type(factory).__name__}, not a MachineFactory",
                field="factory",
                machine=machine,
            )
        return factory

    @staticmethod
    def _check_ref(ref: str, registry: dict[str, Any], kind: str, replace: bool) -> None:
        if not isinstance(ref, str) or not ref.strip():
            raise ValueError(f"{kind} reference must be a non-empty string")
        if ref in registry and not replace:
            raise ValueError(f"{kind} '{ref}' is already registered")
