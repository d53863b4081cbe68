"""Tests for EntityStateStore component."""

from datetime import timedelta

import pytest

from fsmengine.domain.components.entity_state_store import EntityStateStore
from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.components.loader import MachineLoader
from fsmengine.domain.components.registry import CapabilityRegistry
from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConcurrentModificationError,
    NotFoundError,
)
from fsmengine.domain.models.definition import MachineDefinition
from fsmengine.domain.models.machine import MachineConfig
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore


@pytest.fixture
def entities(state_store: InMemoryStateStore, observability) -> EntityStateStore:
    return EntityStateStore(state_store=state_store, observability_manager=observability)


@pytest.fixture
def definition(registry: CapabilityRegistry, order_config: MachineConfig, state_store, observability):
    loader = MachineLoader(
        state_store=state_store, registry=registry, observability_manager=observability
    )
    return loader.build(order_config)


class TestEntityStateStore:
    """Tests for entity lifecycle operations."""

    @pytest.mark.asyncio
    async def test_add_creates_entity_in_initial_state(
        self,
        entities: EntityStateStore,
        definition: MachineDefinition,
        state_store: InMemoryStateStore,
        observability,
    ) -> None:
        """Test that add writes the entity and exactly one creation record."""
        entity = await entities.add(definition, "42")

        assert entity.state == "new"
        assert await entities.get_state("order", "42") == "new"
        history = await state_store.get_history("order", "42")
        assert len(history) == 1
        assert history[0].is_creation
        assert history[0].changetime == entity.changetime
        assert observability.event_types() == ["entity_added"]

    @pytest.mark.asyncio
    async def test_add_twice_raises_without_extra_history(
        self, entities: EntityStateStore, definition: MachineDefinition, state_store
    ) -> None:
        """Test that duplicate adds raise AlreadyExistsError and write nothing."""
        await entities.add(definition, "42")

        with pytest.raises(AlreadyExistsError):
            await entities.add(definition, "42")

        assert len(await state_store.get_history("order", "42")) == 1

    @pytest.mark.asyncio
    async def test_add_survives_event_failure(
        self, entities: EntityStateStore, definition: MachineDefinition, observability
    ) -> None:
        """Test that event emission failures are logged, not raised."""
        observability.emit_error = RuntimeError("sink down")

        entity = await entities.add(definition, "42")

        assert entity.state == "new"
        assert observability.logs[-1]["level"] == "WARNING"

    @pytest.mark.asyncio
    async def test_get_unknown_entity_raises(self, entities: EntityStateStore) -> None:
        """Test that unknown entities raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await entities.get("order", "missing")

    @pytest.mark.asyncio
    async def test_set_state_commits_entity_and_history(
        self, entities: EntityStateStore, definition: MachineDefinition, state_store
    ) -> None:
        """Test that set_state moves the entity and appends the record."""
        entity = await entities.add(definition, "42")
        record = HistoryLog.success_record(entity, "paid", entity.changetime)

        updated, stored = await entities.set_state(entity, "paid", record)

        assert updated.state == "paid"
        assert stored is not None and stored.state_to == "paid"
        assert await entities.find_by_state("order", "paid") == ["42"]
        assert await entities.find_by_state("order", "new") == []

    @pytest.mark.asyncio
    async def test_set_state_with_stale_entity_raises(
        self, entities: EntityStateStore, definition: MachineDefinition, state_store
    ) -> None:
        """Test that a second writer holding a stale read cannot commit."""
        entity = await entities.add(definition, "42")
        first = HistoryLog.success_record(entity, "paid", entity.changetime + timedelta(seconds=1))
        await entities.set_state(entity, "paid", first)

        second = HistoryLog.success_record(entity, "paid", entity.changetime + timedelta(seconds=2))
        with pytest.raises(ConcurrentModificationError):
            await entities.set_state(entity, "paid", second)

        assert len(await state_store.get_history("order", "42")) == 2
