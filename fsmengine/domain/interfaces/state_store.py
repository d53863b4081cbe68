"""StateStore interface for configuration, entity and history persistence.

This module defines the abstract StateStore interface: the transactional
store the engine runs on. Implementations must provide

- atomic multi-row commits (an entity row together with a history row),
- exclusive, short-lived access per (machine, entity_id) key,
- monotonic surrogate ids for history records.

Example:
    ```python
    from fsmengine.domain.interfaces.state_store import StateStore
    from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore

    store: StateStore = InMemoryStateStore()

    async with store.entity_lock("order", "123", timeout=5.0):
        entity = await store.get_entity("order", "123")
        ...
        await store.commit(new_entity, history_record, expected_changetime=entity.changetime)
    ```
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from fsmengine.domain.errors import ConcurrentModificationError, StoreError
from fsmengine.domain.models.entity import EntityRecord
from fsmengine.domain.models.history import HistoryQuery, HistoryRecord
from fsmengine.domain.models.machine import MachineConfig


class StateStore(ABC):
    """Abstract interface for state persistence and retrieval.

    All methods are async to support non-blocking I/O. Implementations must
    wrap backend failures in StoreError.
    """

    # Configuration documents

    @abstractmethod
    async def save_machine_config(self, config: MachineConfig) -> None:
        """Save a machine configuration (upsert by machine name).

        Raises:
            StoreError: If the save operation fails.
        """
        pass

    @abstractmethod
    async def get_machine_config(self, machine: str) -> MachineConfig | None:
        """Retrieve a machine configuration, or None if the machine is unknown.

        Raises:
            StoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def list_machine_names(self) -> list[str]:
        """List the names of all stored machines, sorted.

        Raises:
            StoreError: If retrieval fails.
        """
        pass

    # Entities and history

    @abstractmethod
    def entity_lock(
        self,
        machine: str,
        entity_id: str,
        timeout: float | None = None,
    ) -> AbstractAsyncContextManager[None]:
        """Exclusive access to one (machine, entity_id) pair.

        Only the given pair is locked; operations on other entities proceed
        concurrently.

        Args:
            machine: Machine name.
            entity_id: Entity identifier.
            timeout: Maximum seconds to wait for the lock. None waits forever.

        Raises:
            TransitionTimeoutError: If the lock is not acquired in time.
            StoreError: If the lock backend fails.
        """
        pass

    @abstractmethod
    async def get_entity(self, machine: str, entity_id: str) -> EntityRecord | None:
        """Retrieve an entity record, or None if it does not exist.

        Raises:
            StoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def create_entity(self, entity: EntityRecord, history: HistoryRecord) -> HistoryRecord:
        """Insert a new entity together with its creation history record.

        Both rows are written atomically.

        Returns:
            The history record with its surrogate id assigned.

        Raises:
            AlreadyExistsError: If the (machine, entity_id) pair exists. Nothing
                is written in that case.
            StoreError: If the write fails.
        """
        pass

    @abstractmethod
    async def commit(
        self,
        entity: EntityRecord | None,
        history: HistoryRecord | None,
        expected_changetime: datetime | None = None,
    ) -> HistoryRecord | None:
        """Atomically overwrite an entity and/or append a history record.

        Args:
            entity: New entity row, or None to leave the entity untouched.
            history: History record to append, or None to append nothing.
            expected_changetime: When given, the commit only proceeds if the
                stored entity still carries this changetime.

        Returns:
            The appended history record with its id assigned, or None.

        Raises:
            NotFoundError: If the entity to overwrite does not exist.
            ConcurrentModificationError: If expected_changetime does not match.
            StoreError: If the write fails. Nothing is committed in that case.
        """
        pass

    @abstractmethod
    async def find_entity_ids(self, machine: str, state: str) -> list[str]:
        """Return the ids of all entities of ``machine`` currently in ``state``.

        Raises:
            StoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def get_history(self, machine: str, entity_id: str) -> list[HistoryRecord]:
        """Return an entity's history ordered by (changetime, id).

        Raises:
            StoreError: If retrieval fails.
        """
        pass

    @abstractmethod
    async def query_history(self, query: HistoryQuery) -> list[HistoryRecord]:
        """Return history records matching ``query`` ordered by (changetime, id).

        Raises:
            StoreError: If the query fails.
        """
        pass

    async def close(self) -> None:
        """Release backend resources. The default implementation does nothing."""
        return None


__all__ = ["ConcurrentModificationError", "StateStore", "StoreError"]
