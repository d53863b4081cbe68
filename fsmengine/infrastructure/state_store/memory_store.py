"""In-memory state store implementation.

This module provides an in-memory implementation of the StateStore interface
using Python dictionaries. It is safe for concurrent asyncio tasks and needs
no external services, which makes it the default store and the one used in
tests.

Example:
    ```python
    from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore

    store = InMemoryStateStore()
    await store.save_machine_config(config)
    entity = await store.get_entity("order", "123")
    ```
"""

import asyncio
import itertools
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    NotFoundError,
    StoreError,
    TransitionTimeoutError,
)
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.entity import EntityRecord
from fsmengine.domain.models.history import HistoryQuery, HistoryRecord
from fsmengine.domain.models.machine import MachineConfig


class InMemoryStateStore(StateStore):
    """In-memory implementation of StateStore interface.

    Thread Safety:
        - Writes are serialized by a single asyncio.Lock and never await while
          holding partially applied changes, so every commit is atomic.
        - Reads are safe without locks (dict reads are atomic in Python).
        - Entity locks are asyncio.Lock instances kept per (machine, entity_id)
          in a WeakValueDictionary; unused locks are collected automatically.

    Attributes:
        _machines: Machine configurations keyed by machine name
        _entities: EntityRecord objects keyed by (machine, entity_id)
        _state_index: Entity ids keyed by (machine, state)
        _history: HistoryRecord lists keyed by (machine, entity_id)
        _history_ids: Monotonic surrogate id sequence
        _write_lock: asyncio.Lock serializing write operations
    """

    def __init__(self) -> None:
        """Initialize InMemoryStateStore with empty storage dictionaries."""
        # Storage dictionaries
        self._machines: dict[str, MachineConfig] = {}
        self._entities: dict[tuple[str, str], EntityRecord] = {}
        self._state_index: dict[tuple[str, str], set[str]] = {}
        self._history: dict[tuple[str, str], list[HistoryRecord]] = {}
        self._history_ids = itertools.count(1)

        self._write_lock = asyncio.Lock()
        self._entity_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def save_machine_config(self, config: MachineConfig) -> None:
        """Save a machine configuration (upsert by machine name)."""
        try:
            async with self._write_lock:
                self._machines[config.machine] = config
        except Exception as e:
            raise StoreError(f"Failed to save machine {config.machine}: {e}") from e

    async def get_machine_config(self, machine: str) -> MachineConfig | None:
        """Retrieve a machine configuration by name."""
        return self._machines.get(machine)

    async def list_machine_names(self) -> list[str]:
        """List all stored machine names, sorted."""
        return sorted(self._machines)

    @asynccontextmanager
    async def entity_lock(
        self,
        machine: str,
        entity_id: str,
        timeout: float | None = None,
    ) -> AsyncIterator[None]:
        """Hold the asyncio.Lock of one (machine, entity_id) pair."""
        key = (machine, entity_id)
        lock = self._entity_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._entity_locks[key] = lock

        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except TimeoutError as e:
            raise TransitionTimeoutError(
                f"Timed out after {timeout}s waiting for lock on {machine}:{entity_id}"
            ) from e
        try:
            yield
        finally:
            lock.release()

    async def get_entity(self, machine: str, entity_id: str) -> EntityRecord | None:
        """Retrieve an entity record."""
        return self._entities.get((machine, entity_id))

    async def create_entity(self, entity: EntityRecord, history: HistoryRecord) -> HistoryRecord:
        """Insert a new entity together with its creation history record."""
        async with self._write_lock:
            if entity.key in self._entities:
                raise AlreadyExistsError(
                    f"Entity {entity.entity_id} already exists in machine {entity.machine}"
                )
            try:
                record = self._with_id(history)
                self._entities[entity.key] = entity
                self._index_add(entity)
                self._history.setdefault(entity.key, []).append(record)
            except Exception as e:
                raise StoreError(
                    f"Failed to create entity {entity.machine}:{entity.entity_id}: {e}"
                ) from e
        return record

    async def commit(
        self,
        entity: EntityRecord | None,
        history: HistoryRecord | None,
        expected_changetime: datetime | None = None,
    ) -> HistoryRecord | None:
        """Atomically overwrite an entity and/or append a history record.

        All checks run before the first mutation, so a failed commit leaves
        the store untouched.
        """
        async with self._write_lock:
            key = self._commit_key(entity, history)
            current = self._entities.get(key)
            if current is None:
                raise NotFoundError(f"Entity {key[1]} does not exist in machine {key[0]}")
            if expected_changetime is not None and current.changetime != expected_changetime:
                raise ConcurrentModificationError(
                    f"Entity {key[0]}:{key[1]} changed since it was read "
                    f"(expected changetime {expected_changetime.isoformat()}, "
                    f"found {current.changetime.isoformat()})"
                )

            record = self._with_id(history) if history is not None else None
            if entity is not None:
                self._index_remove(current)
                self._entities[key] = entity
                self._index_add(entity)
            if record is not None:
                self._history.setdefault(key, []).append(record)
        return record

    async def find_entity_ids(self, machine: str, state: str) -> list[str]:
        """Return the ids of all entities of ``machine`` in ``state``."""
        return sorted(self._state_index.get((machine, state), ()))

    async def get_history(self, machine: str, entity_id: str) -> list[HistoryRecord]:
        """Return an entity's history ordered by (changetime, id)."""
        records = list(self._history.get((machine, entity_id), ()))
        return sorted(records, key=HistoryRecord.sort_key)

    async def query_history(self, query: HistoryQuery) -> list[HistoryRecord]:
        """Return history records matching ``query``."""
        try:
            if query.machine is not None and query.entity_id is not None:
                candidates = list(self._history.get((query.machine, query.entity_id), ()))
            else:
                candidates = [r for records in self._history.values() for r in records]
            results = sorted(
                (r for r in candidates if query.matches(r)),
                key=HistoryRecord.sort_key,
            )
            return query.paginate(results)
        except Exception as e:
            raise StoreError(f"Failed to query history: {e}") from e

    def _with_id(self, history: HistoryRecord) -> HistoryRecord:
        return history.model_copy(update={"id": next(self._history_ids)})

    @staticmethod
    def _commit_key(
        entity: EntityRecord | None, history: HistoryRecord | None
    ) -> tuple[str, str]:
        if entity is not None:
            if history is not None and (history.machine, history.entity_id) != entity.key:
                raise StoreError("Entity and history record belong to different entities")
            return entity.key
        if history is not None:
            return (history.machine, history.entity_id)
        raise StoreError("Nothing to commit")

    def _index_add(self, entity: EntityRecord) -> None:
        self._state_index.setdefault((entity.machine, entity.state), set()).add(entity.entity_id)

    def _index_remove(self, entity: EntityRecord) -> None:
        ids = self._state_index.get((entity.machine, entity.state))
        if ids is not None:
            ids.discard(entity.entity_id)
            if not ids:
                del self._state_index[(entity.machine, entity.state)]
