"""EntityStateStore component holding the current state of entities."""

from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.errors import NotFoundError
from fsmengine.domain.interfaces.observability_manager import (
    EVENT_ENTITY_ADDED,
    ObservabilityManager,
)
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.definition import MachineDefinition
from fsmengine.domain.models.entity import EntityRecord, utcnow
from fsmengine.domain.models.history import HistoryRecord


class EntityStateStore:
    """Creates, reads and overwrites entity records.

    Every write goes through a single StateStore commit together with the
    history record describing it, so an entity's state and its history never
    diverge.
    """

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
    ) -> None:
        self._state_store = state_store
        self._observability = observability_manager

    async def add(self, definition: MachineDefinition, entity_id: str) -> EntityRecord:
        """Create an entity in the machine's initial state.

        Writes the entity and its creation history record atomically.

        Args:
            definition: Loaded machine the entity belongs to.
            entity_id: Caller owned identifier.

        Returns:
            The created EntityRecord.

        Raises:
            AlreadyExistsError: If the entity already exists. No history
                record is written in that case.
            StoreError: If the store fails.
        """
        entity = EntityRecord(
            machine=definition.name,
            entity_id=entity_id,
            state=definition.initial_state,
            changetime=utcnow(),
        )
        record = await self._state_store.create_entity(entity, HistoryLog.creation_record(entity))

        await self._observability.emit_safely(
            EVENT_ENTITY_ADDED,
            {
                "machine": entity.machine,
                "entity_id": entity.entity_id,
                "state": entity.state,
                "history_id": record.id,
            },
            metadata={"changetime": entity.changetime.isoformat()},
        )
        return entity

    async def get(self, machine: str, entity_id: str) -> EntityRecord:
        """Return an entity record.

        Raises:
            NotFoundError: If the entity does not exist.
        """
        entity = await self._state_store.get_entity(machine, entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} does not exist in machine {machine}")
        return entity

    async def get_state(self, machine: str, entity_id: str) -> str:
        return (await self.get(machine, entity_id)).state

    async def set_state(
        self,
        entity: EntityRecord,
        new_state: str,
        history: HistoryRecord | None,
    ) -> tuple[EntityRecord, HistoryRecord | None]:
        """Move ``entity`` to ``new_state`` and append ``history`` atomically.

        The commit only succeeds if the stored entity still has the
        changetime of ``entity``.

        Args:
            entity: Entity as read before the change.
            new_state: State to enter.
            history: Record describing the change. None only for repairs.

        Returns:
            The new EntityRecord and the stored history record.

        Raises:
            ConcurrentModificationError: If the entity changed since it was read.
            NotFoundError: If the entity no longer exists.
        """
        changetime = history.changetime if history is not None else utcnow()
        updated = entity.model_copy(update={"state": new_state, "changetime": changetime})
        stored = await self._state_store.commit(
            updated, history, expected_changetime=entity.changetime
        )
        return updated, stored

    async def find_by_state(self, machine: str, state: str) -> list[str]:
        """Return the ids of the entities of ``machine`` currently in ``state``."""
        return await self._state_store.find_entity_ids(machine, state)
