"""Tests for HistoryLog component and history models."""

from datetime import datetime, timedelta, timezone

import pytest

from fsmengine.domain.components.history_log import HistoryLog
from fsmengine.domain.errors import CommandError
from fsmengine.domain.models.entity import EntityRecord, utcnow
from fsmengine.domain.models.history import FailureDetail, HistoryQuery, HistoryRecord
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def history_log(state_store: InMemoryStateStore, observability) -> HistoryLog:
    return HistoryLog(state_store=state_store, observability_manager=observability)


@pytest.fixture
def entity() -> EntityRecord:
    return EntityRecord(machine="order", entity_id="1", state="new", changetime=T0)


class TestFailureDetail:
    """Tests for FailureDetail serialization."""

    def test_message_round_trip(self) -> None:
        """Test that the JSON message keeps code and text."""
        detail = FailureDetail(code="no-stock", message="Item 4 is sold out")

        message = detail.to_message()

        assert message == '{"code": "no-stock", "message": "Item 4 is sold out"}'
        assert FailureDetail.from_message(message) == detail

    def test_non_json_message(self) -> None:
        """Test that legacy plain text messages are kept under code 'unknown'."""
        assert FailureDetail.from_message("boom") == FailureDetail(code="unknown", message="boom")

    def test_from_exception_uses_code_attribute(self) -> None:
        """Test that CommandError codes are carried over."""
        detail = FailureDetail.from_exception(CommandError("card declined", code="payment"))

        assert detail == FailureDetail(code="payment", message="card declined")

    def test_from_exception_defaults_to_class_name(self) -> None:
        """Test that plain exceptions use their class name as code."""
        assert FailureDetail.from_exception(ValueError("bad")).code == "ValueError"


class TestRecordBuilders:
    """Tests for the record builders."""

    def test_creation_record(self, entity: EntityRecord) -> None:
        record = HistoryLog.creation_record(entity)

        assert record.is_creation
        assert record.state_from == record.state_to == "new"
        assert record.message is None
        assert not record.is_failure
        assert not record.is_self_transition

    def test_success_record(self, entity: EntityRecord) -> None:
        later = T0 + timedelta(seconds=1)

        record = HistoryLog.success_record(entity, "paid", later)

        assert (record.state_from, record.state_to) == ("new", "paid")
        assert record.changetime == later
        assert record.changetime_previous == T0
        assert record.message is None

    def test_self_transition_record(self, entity: EntityRecord) -> None:
        record = HistoryLog.success_record(entity, "new", T0 + timedelta(seconds=1))

        assert record.is_self_transition
        assert not record.is_failure

    def test_failure_record(self, entity: EntityRecord) -> None:
        record = HistoryLog.failure_record(
            entity, FailureDetail(code="timeout"), T0 + timedelta(seconds=1)
        )

        assert record.is_failure
        assert record.state_from == record.state_to == "new"
        assert record.changetime_previous == T0
        assert record.failure == FailureDetail(code="timeout")


class TestHistoryLogStorage:
    """Tests for writing and reading history through the store."""

    @pytest.mark.asyncio
    async def test_record_failure_appends_without_touching_entity(
        self, history_log: HistoryLog, state_store: InMemoryStateStore, entity: EntityRecord
    ) -> None:
        """Test that failed attempts are appended while the entity is unchanged."""
        await state_store.create_entity(entity, HistoryLog.creation_record(entity))

        record = await history_log.record_failure(entity, FailureDetail(code="boom"))

        assert record.id is not None
        assert await state_store.get_entity("order", "1") == entity
        history = await history_log.get_history("order", "1")
        assert [r.is_failure for r in history] == [False, True]

    @pytest.mark.asyncio
    async def test_record_failure_never_precedes_entity_changetime(
        self, history_log: HistoryLog, state_store: InMemoryStateStore
    ) -> None:
        """Test that a failure after a clock step back still sorts last."""
        ahead = EntityRecord(
            machine="order",
            entity_id="2",
            state="new",
            changetime=utcnow() + timedelta(hours=1),
        )
        await state_store.create_entity(ahead, HistoryLog.creation_record(ahead))

        record = await history_log.record_failure(ahead, FailureDetail(code="boom"))

        assert record.changetime == ahead.changetime
        history = await history_log.get_history("order", "2")
        assert history[-1].id == record.id
        assert HistoryLog.verify_chain(ahead, history) == []

    @pytest.mark.asyncio
    async def test_query(
        self, history_log: HistoryLog, state_store: InMemoryStateStore, entity: EntityRecord
    ) -> None:
        """Test that query delegates HistoryQuery filtering to the store."""
        await state_store.create_entity(entity, HistoryLog.creation_record(entity))
        await history_log.record_failure(entity, FailureDetail(code="boom"))

        failures = await history_log.query(HistoryQuery(machine="order", failures_only=True))

        assert len(failures) == 1
        assert failures[0].failure == FailureDetail(code="boom")


def _chain(*states: str) -> list[HistoryRecord]:
    records = [
        HistoryRecord(
            id=1, machine="order", entity_id="1", state_from=states[0], state_to=states[0],
            changetime=T0,
        )
    ]
    for idx, (prev, nxt) in enumerate(zip(states, states[1:]), start=2):
        records.append(
            HistoryRecord(
                id=idx,
                machine="order",
                entity_id="1",
                state_from=prev,
                state_to=nxt,
                changetime=T0 + timedelta(seconds=idx),
                changetime_previous=T0 + timedelta(seconds=idx - 1),
            )
        )
    return records


class TestReconciliationHelpers:
    """Tests for verify_chain and derive_state."""

    def test_consistent_chain(self) -> None:
        records = _chain("new", "paid", "shipped")
        entity = EntityRecord(machine="order", entity_id="1", state="shipped", changetime=T0)

        assert HistoryLog.verify_chain(entity, records) == []
        assert HistoryLog.derive_state(records) == "shipped"

    def test_failures_do_not_change_derived_state(self, entity: EntityRecord) -> None:
        records = _chain("new", "paid")
        paid = entity.model_copy(update={"state": "paid"})
        records.append(
            HistoryLog.failure_record(paid, FailureDetail(code="x"), T0 + timedelta(minutes=1))
        )

        assert HistoryLog.derive_state(records) == "paid"
        assert HistoryLog.verify_chain(paid, records) == []

    def test_stored_state_mismatch_detected(self, entity: EntityRecord) -> None:
        records = _chain("new", "paid")

        problems = HistoryLog.verify_chain(entity, records)

        assert problems == ["History ends in 'paid' but the entity is in 'new'"]

    def test_broken_link_detected(self) -> None:
        records = _chain("new", "paid")
        records.append(
            HistoryRecord(
                id=9,
                machine="order",
                entity_id="1",
                state_from="new",
                state_to="shipped",
                changetime=T0 + timedelta(hours=1),
                changetime_previous=T0,
            )
        )
        entity = EntityRecord(machine="order", entity_id="1", state="shipped", changetime=T0)

        problems = HistoryLog.verify_chain(entity, records)

        assert len(problems) == 1
        assert "leaves 'new'" in problems[0]

    def test_missing_creation_record_detected(self, entity: EntityRecord) -> None:
        records = _chain("new", "paid")[1:]
        paid = entity.model_copy(update={"state": "paid"})

        problems = HistoryLog.verify_chain(paid, records)

        assert "Expected exactly one creation record, found 0" in problems
        assert "First record is not the creation record" in problems

    def test_empty_history(self, entity: EntityRecord) -> None:
        assert HistoryLog.verify_chain(entity, []) == ["History is empty"]
        assert HistoryLog.derive_state([]) is None
