"""Tests for InMemoryStateStore implementation."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    NotFoundError,
    StoreError,
    TransitionTimeoutError,
)
from fsmengine.domain.models.entity import EntityRecord
from fsmengine.domain.models.history import FailureDetail, HistoryQuery, HistoryRecord
from fsmengine.domain.models.machine import MachineConfig
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _entity(entity_id: str = "1", state: str = "new", changetime: datetime = T0) -> EntityRecord:
    return EntityRecord(machine="order", entity_id=entity_id, state=state, changetime=changetime)


def _creation(entity: EntityRecord) -> HistoryRecord:
    return HistoryRecord(
        machine=entity.machine,
        entity_id=entity.entity_id,
        state_from=entity.state,
        state_to=entity.state,
        changetime=entity.changetime,
    )


def _move(entity: EntityRecord, state_to: str, changetime: datetime) -> HistoryRecord:
    return HistoryRecord(
        machine=entity.machine,
        entity_id=entity.entity_id,
        state_from=entity.state,
        state_to=state_to,
        changetime=changetime,
        changetime_previous=entity.changetime,
    )


class TestInMemoryStateStoreMachines:
    """Tests for machine configuration storage."""

    @pytest.mark.asyncio
    async def test_save_and_get_machine(self, order_config: MachineConfig) -> None:
        """Test that machine configurations round-trip by name."""
        store = InMemoryStateStore()

        await store.save_machine_config(order_config)

        assert await store.get_machine_config("order") == order_config
        assert await store.get_machine_config("missing") is None
        assert await store.list_machine_names() == ["order"]


class TestInMemoryStateStoreEntities:
    """Tests for entity creation and commits."""

    @pytest.mark.asyncio
    async def test_create_entity_stores_entity_and_history(self) -> None:
        """Test that create_entity writes the entity and assigns a history id."""
        store = InMemoryStateStore()
        entity = _entity()

        record = await store.create_entity(entity, _creation(entity))

        assert record.id == 1
        assert await store.get_entity("order", "1") == entity
        assert await store.get_history("order", "1") == [record]
        assert await store.find_entity_ids("order", "new") == ["1"]

    @pytest.mark.asyncio
    async def test_create_entity_twice_raises(self) -> None:
        """Test that duplicate entities are rejected without extra history."""
        store = InMemoryStateStore()
        entity = _entity()
        await store.create_entity(entity, _creation(entity))

        with pytest.raises(AlreadyExistsError):
            await store.create_entity(entity, _creation(entity))

        assert len(await store.get_history("order", "1")) == 1

    @pytest.mark.asyncio
    async def test_commit_moves_entity_and_updates_index(self) -> None:
        """Test that commit overwrites the entity and maintains the state index."""
        store = InMemoryStateStore()
        entity = _entity()
        await store.create_entity(entity, _creation(entity))
        later = T0 + timedelta(seconds=1)
        moved = entity.model_copy(update={"state": "paid", "changetime": later})

        record = await store.commit(moved, _move(entity, "paid", later), expected_changetime=T0)

        assert record is not None and record.id == 2
        assert (await store.get_entity("order", "1")).state == "paid"
        assert await store.find_entity_ids("order", "new") == []
        assert await store.find_entity_ids("order", "paid") == ["1"]

    @pytest.mark.asyncio
    async def test_commit_history_only_leaves_entity(self) -> None:
        """Test that a history-only commit appends without touching the entity."""
        store = InMemoryStateStore()
        entity = _entity()
        await store.create_entity(entity, _creation(entity))
        failure = _move(entity, "new", T0 + timedelta(seconds=1)).model_copy(
            update={"message": FailureDetail(code="boom").to_message()}
        )

        record = await store.commit(None, failure)

        assert record is not None and record.is_failure
        assert await store.get_entity("order", "1") == entity
        assert len(await store.get_history("order", "1")) == 2

    @pytest.mark.asyncio
    async def test_commit_rejects_stale_changetime(self) -> None:
        """Test the optimistic changetime check."""
        store = InMemoryStateStore()
        entity = _entity()
        await store.create_entity(entity, _creation(entity))
        later = T0 + timedelta(seconds=1)
        moved = entity.model_copy(update={"state": "paid", "changetime": later})

        with pytest.raises(ConcurrentModificationError):
            await store.commit(
                moved, _move(entity, "paid", later), expected_changetime=T0 - timedelta(hours=1)
            )

        assert (await store.get_entity("order", "1")).state == "new"
        assert len(await store.get_history("order", "1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_modification_is_a_store_error(self) -> None:
        """Test that ConcurrentModificationError belongs to the StoreError family."""
        assert issubclass(ConcurrentModificationError, StoreError)

    @pytest.mark.asyncio
    async def test_commit_unknown_entity_raises(self) -> None:
        """Test that committing an unknown entity raises NotFoundError."""
        store = InMemoryStateStore()

        with pytest.raises(NotFoundError):
            await store.commit(_entity(), None)

    @pytest.mark.asyncio
    async def test_commit_nothing_raises(self) -> None:
        """Test that an empty commit is rejected."""
        with pytest.raises(StoreError, match="Nothing to commit"):
            await InMemoryStateStore().commit(None, None)


class TestInMemoryStateStoreHistory:
    """Tests for history reads and queries."""

    @pytest.mark.asyncio
    async def test_history_ordered_by_changetime_then_id(self) -> None:
        """Test that history is ordered by (changetime, id)."""
        store = InMemoryStateStore()
        entity = _entity()
        await store.create_entity(entity, _creation(entity))
        same_time = T0 + timedelta(seconds=5)
        failure = FailureDetail(code="x").to_message()
        for _ in range(3):
            await store.commit(
                None, _move(entity, "new", same_time).model_copy(update={"message": failure})
            )

        history = await store.get_history("order", "1")

        assert [r.id for r in history] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_query_history_filters_and_paginates(self) -> None:
        """Test HistoryQuery filtering across entities."""
        store = InMemoryStateStore()
        for idx in range(3):
            entity = _entity(entity_id=str(idx), changetime=T0 + timedelta(minutes=idx))
            await store.create_entity(entity, _creation(entity))
        failing = await store.get_entity("order", "1")
        assert failing is not None
        await store.commit(
            None,
            _move(failing, "new", T0 + timedelta(hours=1)).model_copy(
                update={"message": FailureDetail(code="boom").to_message()}
            ),
        )

        all_records = await store.query_history(HistoryQuery(machine="order"))
        failures = await store.query_history(HistoryQuery(failures_only=True))
        page = await store.query_history(HistoryQuery(machine="order", offset=1, limit=2))
        ranged = await store.query_history(
            HistoryQuery(timestamp_from=T0 + timedelta(minutes=1), timestamp_to=T0 + timedelta(minutes=2))
        )

        assert len(all_records) == 4
        assert [r.entity_id for r in failures] == ["1"]
        assert [r.entity_id for r in page] == ["1", "2"]
        assert [r.entity_id for r in ranged] == ["1", "2"]


class TestInMemoryStateStoreLocks:
    """Tests for entity-scoped locks."""

    @pytest.mark.asyncio
    async def test_entity_lock_serializes_holders(self) -> None:
        """Test that two holders of the same entity lock never overlap."""
        store = InMemoryStateStore()
        active = 0
        max_active = 0

        async def hold() -> None:
            nonlocal active, max_active
            async with store.entity_lock("order", "1"):
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(hold() for _ in range(5)))

        assert max_active == 1

    @pytest.mark.asyncio
    async def test_entity_locks_are_per_entity(self) -> None:
        """Test that locks on different entities do not block each other."""
        store = InMemoryStateStore()

        async with store.entity_lock("order", "1"):
            async with store.entity_lock("order", "2", timeout=0.1):
                pass

    @pytest.mark.asyncio
    async def test_entity_lock_timeout(self) -> None:
        """Test that waiting past the timeout raises TransitionTimeoutError."""
        store = InMemoryStateStore()

        async with store.entity_lock("order", "1"):
            with pytest.raises(TransitionTimeoutError):
                async with store.entity_lock("order", "1", timeout=0.05):
                    pass

        # Lock is usable again afterwards
        async with store.entity_lock("order", "1", timeout=0.05):
            pass
