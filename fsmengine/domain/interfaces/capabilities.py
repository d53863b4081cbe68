"""Capability interfaces for rules, commands and machine factories.

Rules and commands hold arbitrary domain logic and are referenced from
machine configuration by name. The CapabilityRegistry maps those names to
instances implementing the interfaces below.

Example:
    ```python
    from fsmengine.domain.interfaces.capabilities import Command, Rule

    class IsPaid(Rule):
        async def evaluate(self, context: EntityContext) -> bool:
            order = context.subject
            return order.balance == 0

    class SendShippingMail(Command):
        async def execute(self, context: EntityContext) -> None:
            await mailer.send(context.entity_id, "shipped")
    ```
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fsmengine.domain.models.entity import EntityContext, EntityRecord
    from fsmengine.domain.models.history import FailureDetail


class Rule(ABC):
    """Guard predicate deciding whether a transition may fire.

    Evaluation is expected to be free of side effects. It may raise; the
    engine then treats the candidate as rejected and continues its search.
    """

    @abstractmethod
    async def evaluate(self, context: EntityContext) -> bool:
        """Return True if the transition described by ``context`` may fire."""
        pass


class Command(ABC):
    """Side-effecting action executed when a transition fires.

    Returning ``None`` (or ``True``) means success. A command reports failure
    by raising, by returning a FailureDetail, or by returning ``False``.
    """

    @abstractmethod
    async def execute(self, context: EntityContext) -> FailureDetail | bool | None:
        """Execute the transition logic for ``context``."""
        pass


class MachineFactory(ABC):
    """Builds the context handed to rules and commands of a machine.

    A machine selects its factory by registry reference. The loader
    constructs the factory once per load and caches it with the definition,
    so implementations may hold connections or repositories.
    """

    @abstractmethod
    async def create_context(
        self,
        entity: EntityRecord,
        attributes: dict[str, Any] | None = None,
    ) -> EntityContext:
        """Build the context for a transition attempt on ``entity``."""
        pass


class DefaultMachineFactory(MachineFactory):
    """Factory used when a machine does not name one: no domain subject."""

    async def create_context(
        self,
        entity: EntityRecord,
        attributes: dict[str, Any] | None = None,
    ) -> EntityContext:
        from fsmengine.domain.models.entity import EntityContext

        return EntityContext(
            machine=entity.machine,
            entity_id=entity.entity_id,
            state=entity.state,
            changetime=entity.changetime,
            attributes=dict(attributes or {}),
        )
