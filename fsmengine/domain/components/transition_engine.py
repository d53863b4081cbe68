"""TransitionEngine component executing entity transitions."""

import asyncio
from collections.abc import Awaitable
from typing import Any, NoReturn, TypeVar

from fsmengine.domain.components.entity_state_store import EntityStateStore
from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.components.loader import MachineLoader
from fsmengine.domain.errors import (
    NoApplicableTransitionError,
    NotFoundError,
    RuleEvaluationError,
    TransitionFailedError,
    TransitionTimeoutError,
)
from fsmengine.domain.interfaces.observability_manager import (
    EVENT_TRANSITION_COMMITTED,
    EVENT_TRANSITION_FAILED,
    ObservabilityManager,
)
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.definition import LoadedTransition, MachineDefinition
from fsmengine.domain.models.entity import EntityContext, EntityRecord, utcnow
from fsmengine.domain.models.history import FailureDetail
from fsmengine.domain.models.outcome import TransitionOutcome

T = TypeVar("T")

TIMEOUT_FAILURE_CODE = "timeout"
REJECTED_FAILURE_CODE = "command_rejected"


class _Deadline:
    """Remaining time budget of one transition call."""

    def __init__(self, timeout: float | None) -> None:
        self.timeout = timeout
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._expires_at = loop.time() + timeout if timeout is not None else None

    def scope(self) -> asyncio.Timeout:
        """Timeout context bound to this deadline; ``expired()`` tells if it fired."""
        return asyncio.timeout_at(self._expires_at)

    def remaining(self, cap: float | None = None) -> float | None:
        if self._expires_at is None:
            return cap
        left = max(self._expires_at - self._loop.time(), 0.0)
        return left if cap is None else min(left, cap)

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._loop.time() >= self._expires_at


class TransitionEngine:
    """Moves entities between states according to their machine definition.

    One call runs entirely under the store's entity lock:

    1. read the entity and its outgoing transitions in (priority, declaration)
       order, optionally restricted to one target state;
    2. evaluate rules until one accepts (raising rules are collected and
       skipped);
    3. execute the command of the accepted transition;
    4. commit the new state with its history record, or record the failed
       attempt and leave the entity untouched.

    Example:
        ```python
        outcome = await engine.transition("order", "123")
        print(outcome.state_from, "->", outcome.state_to)
        ```
    """

    def __init__(
        self,
        state_store: StateStore,
        loader: MachineLoader,
        entity_store: EntityStateStore,
        history_log: HistoryLog,
        observability_manager: ObservabilityManager,
        lock_timeout: float | None = None,
        default_timeout: float | None = None,
    ) -> None:
        """Initialize TransitionEngine.

        Args:
            state_store: StateStore providing entity locks.
            loader: MachineLoader resolving machine definitions.
            entity_store: EntityStateStore reading and committing entities.
            history_log: HistoryLog recording failed attempts.
            observability_manager: ObservabilityManager for events and logging.
            lock_timeout: Maximum wait for the entity lock (None waits forever).
            default_timeout: Deadline applied when a call passes no timeout.
        """
        self._state_store = state_store
        self._loader = loader
        self._entities = entity_store
        self._history = history_log
        self._observability = observability_manager
        self._lock_timeout = lock_timeout
        self._default_timeout = default_timeout

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

        Args:
            machine: Machine name.
            entity_id: Entity to move.
            target_state: Only consider transitions into this state.
            attributes: Caller data passed to the machine factory.
            timeout: Deadline in seconds for lock, rules and command.

        Returns:
            TransitionOutcome describing the committed transition.

        Raises:
            ConfigurationError: If the machine definition is invalid.
            NotFoundError: If the machine, the entity or target_state is unknown.
            NoApplicableTransitionError: If no rule accepts. Nothing is written.
            TransitionFailedError: If the command fails. A failed-attempt
                record is written and the entity keeps its state.
            TransitionTimeoutError: If the deadline passes before the command
                starts. Nothing is written.
            StoreError: If the store fails, including ConcurrentModificationError.
        """
        definition = await self._loader.load(machine)
        if target_state is not None and not definition.has_state(target_state):
            raise NotFoundError(f"State '{target_state}' does not exist in machine '{machine}'")

        deadline = _Deadline(timeout if timeout is not None else self._default_timeout)
        async with self._state_store.entity_lock(
            machine, entity_id, timeout=deadline.remaining(self._lock_timeout)
        ):
            return await self._attempt(definition, entity_id, target_state, attributes, deadline)

    async def _attempt(
        self,
        definition: MachineDefinition,
        entity_id: str,
        target_state: str | None,
        attributes: dict[str, Any] | None,
        deadline: _Deadline,
    ) -> TransitionOutcome:
        entity = await self._entities.get(definition.name, entity_id)
        candidates = [
            t
            for t in definition.outgoing(entity.state)
            if target_state is None or t.state_to == target_state
        ]
        if not candidates:
            raise self._no_transition(entity, target_state, [])

        context = await self._within(
            deadline,
            definition.factory.create_context(entity, attributes),
            f"building context for {entity.machine}:{entity.entity_id}",
        )

        selected, rule_errors = await self._select(entity, candidates, context, deadline)
        if selected is None:
            raise self._no_transition(entity, target_state, rule_errors)

        if deadline.expired:
            raise TransitionTimeoutError(
                f"Transition of {entity.machine}:{entity.entity_id} timed out "
                f"after {deadline.timeout}s before executing its command"
            )

        target_context = context.for_target(selected.state_to)
        failure, cause = await self._execute(selected, target_context, deadline)
        if failure is not None:
            await self._fail(entity, selected, failure, cause)

        changetime = max(utcnow(), entity.changetime)
        record = HistoryLog.success_record(entity, selected.state_to, changetime)
        updated, stored = await self._entities.set_state(entity, selected.state_to, record)
        outcome = TransitionOutcome(
            machine=entity.machine,
            entity_id=entity.entity_id,
            state_from=entity.state,
            state_to=updated.state,
            rule=selected.rule_ref,
            command=selected.command_ref,
            priority=selected.priority,
            changetime=updated.changetime,
            changetime_previous=entity.changetime,
            history_id=stored.id if stored is not None else None,
        )
        await self._observability.emit_safely(
            EVENT_TRANSITION_COMMITTED, outcome.model_dump(mode="json")
        )
        return outcome

    async def _select(
        self,
        entity: EntityRecord,
        candidates: list[LoadedTransition],
        context: EntityContext,
        deadline: _Deadline,
    ) -> tuple[LoadedTransition | None, list[RuleEvaluationError]]:
        rule_errors: list[RuleEvaluationError] = []
        for candidate in candidates:
            try:
                accepted = await self._within(
                    deadline,
                    candidate.rule.evaluate(context.for_target(candidate.state_to)),
                    f"evaluating rule '{candidate.rule_ref}'",
                )
            except TransitionTimeoutError:
                raise
            except Exception as e:
                error = RuleEvaluationError(
                    f"Rule '{candidate.rule_ref}' failed for "
                    f"{entity.state} -> {candidate.state_to}: {e}",
                    rule=candidate.rule_ref,
                    state_to=candidate.state_to,
                )
                error.__cause__ = e
                rule_errors.append(error)
                await self._observability.log(
                    level="WARNING",
                    message=error.message,
                    context={
                        "machine": entity.machine,
                        "entity_id": entity.entity_id,
                        "rule": candidate.rule_ref,
                        "state_from": entity.state,
                        "state_to": candidate.state_to,
                        "error_type": type(e).__name__,
                    },
                )
                continue
            if accepted:
                return candidate, rule_errors
        return None, rule_errors

    async def _execute(
        self,
        transition: LoadedTransition,
        context: EntityContext,
        deadline: _Deadline,
    ) -> tuple[FailureDetail | None, BaseException | None]:
        scope = deadline.scope()
        try:
            async with scope:
                result = await transition.command.execute(context)
        except TimeoutError as e:
            if not scope.expired():
                return FailureDetail.from_exception(e), e
            return (
                FailureDetail(
                    code=TIMEOUT_FAILURE_CODE,
                    message=f"Command '{transition.command_ref}' timed out "
                    f"after {deadline.timeout}s",
                ),
                e,
            )
        except Exception as e:
            return FailureDetail.from_exception(e), e

        if isinstance(result, FailureDetail):
            return result, None
        if result is False:
            return (
                FailureDetail(
                    code=REJECTED_FAILURE_CODE,
                    message=f"Command '{transition.command_ref}' reported failure",
                ),
                None,
            )
        return None, None

    async def _fail(
        self,
        entity: EntityRecord,
        transition: LoadedTransition,
        failure: FailureDetail,
        cause: BaseException | None,
    ) -> NoReturn:
        record = await self._history.record_failure(entity, failure)
        await self._observability.emit_safely(
            EVENT_TRANSITION_FAILED,
            {
                "machine": entity.machine,
                "entity_id": entity.entity_id,
                "state_from": entity.state,
                "state_to": transition.state_to,
                "command": transition.command_ref,
                "code": failure.code,
                "message": failure.message,
                "history_id": record.id,
            },
        )
        raise TransitionFailedError(
            f"Command '{transition.command_ref}' failed for {entity.machine}:{entity.entity_id} "
            f"({entity.state} -> {transition.state_to}): [{failure.code}] {failure.message}",
            machine=entity.machine,
            entity_id=entity.entity_id,
            state_from=entity.state,
            state_to=transition.state_to,
            failure=failure,
            history_record=record,
        ) from cause

    @staticmethod
    async def _within(deadline: _Deadline, awaitable: Awaitable[T], what: str) -> T:
        scope = deadline.scope()
        try:
            async with scope:
                return await awaitable
        except TimeoutError as e:
            if not scope.expired():
                raise
            raise TransitionTimeoutError(
                f"Timed out after {deadline.timeout}s while {what}"
            ) from e

    @staticmethod
    def _no_transition(
        entity: EntityRecord,
        target_state: str | None,
        rule_errors: list[RuleEvaluationError],
    ) -> NoApplicableTransitionError:
        target = f" to '{target_state}'" if target_state is not None else ""
        message = (
            f"No applicable transition{target} from state '{entity.state}' "
            f"for {entity.machine}:{entity.entity_id}"
        )
        if rule_errors:
            message += f" ({len(rule_errors)} rule error(s))"
        return NoApplicableTransitionError(
            message,
            machine=entity.machine,
            entity_id=entity.entity_id,
            state=entity.state,
            target_state=target_state,
            rule_errors=rule_errors,
        )
