"""HistoryLog component: the append-only audit trail of entities.

Records are written in the same atomic commit as the entity change they
describe. The reconciliation helpers (``verify_chain``, ``derive_state``)
re-derive an entity's state from its history and are only used off the hot
path.
"""

from datetime import datetime

from fsmengine.domain.errors import StoreError
from fsmengine.domain.interfaces.observability_manager import ObservabilityManager
from fsmengine.domain.interfaces.state_store import StateStore
from fsmengine.domain.models.entity import EntityRecord, utcnow
from fsmengine.domain.models.history import FailureDetail, HistoryQuery, HistoryRecord


class HistoryLog:
    """Builds, appends and reads history records."""

    def __init__(
        self,
        state_store: StateStore,
        observability_manager: ObservabilityManager,
    ) -> None:
        self._state_store = state_store
        self._observability = observability_manager

    @staticmethod
    def creation_record(entity: EntityRecord) -> HistoryRecord:
        """Record written when an entity is added in its initial state."""
        return HistoryRecord(
            machine=entity.machine,
            entity_id=entity.entity_id,
            state_from=entity.state,
            state_to=entity.state,
            changetime=entity.changetime,
            changetime_previous=None,
        )

    @staticmethod
    def success_record(entity: EntityRecord, state_to: str, changetime: datetime) -> HistoryRecord:
        """Record of a committed transition of ``entity`` to ``state_to``."""
        return HistoryRecord(
            machine=entity.machine,
            entity_id=entity.entity_id,
            state_from=entity.state,
            state_to=state_to,
            changetime=changetime,
            changetime_previous=entity.changetime,
        )

    @staticmethod
    def failure_record(
        entity: EntityRecord, failure: FailureDetail, changetime: datetime
    ) -> HistoryRecord:
        """Record of a failed attempt; the entity keeps its state."""
        return HistoryRecord(
            machine=entity.machine,
            entity_id=entity.entity_id,
            state_from=entity.state,
            state_to=entity.state,
            changetime=changetime,
            changetime_previous=entity.changetime,
            message=failure.to_message(),
        )

    async def record_failure(
        self,
        entity: EntityRecord,
        failure: FailureDetail,
        changetime: datetime | None = None,
    ) -> HistoryRecord:
        """Append a failed-attempt record without touching the entity.

        Args:
            entity: Entity as read before the attempt.
            failure: What went wrong.
            changetime: Time of the attempt. Defaults to now, but never earlier
                than the entity changetime.

        Returns:
            The stored record, with its id assigned.

        Raises:
            StoreError: If the record cannot be written.
        """
        record = self.failure_record(
            entity, failure, changetime or max(utcnow(), entity.changetime)
        )
        stored = await self._state_store.commit(None, record)
        if stored is None:
            raise StoreError(
                f"Store did not return the failure record of {entity.machine}:{entity.entity_id}"
            )
        await self._observability.log(
            level="DEBUG",
            message="Recorded failed transition attempt",
            context={
                "machine": entity.machine,
                "entity_id": entity.entity_id,
                "state": entity.state,
                "code": failure.code,
                "history_id": stored.id,
            },
        )
        return stored

    async def get_history(self, machine: str, entity_id: str) -> list[HistoryRecord]:
        """Return the history of one entity ordered by (changetime, id)."""
        return await self._state_store.get_history(machine, entity_id)

    async def query(self, query: HistoryQuery) -> list[HistoryRecord]:
        """Return history records matching ``query``."""
        return await self._state_store.query_history(query)

    @staticmethod
    def verify_chain(entity: EntityRecord, records: list[HistoryRecord]) -> list[str]:
        """Check the history chain of ``entity``.

        Args:
            entity: Current entity record.
            records: Its history ordered by (changetime, id).

        Returns:
            Descriptions of every broken invariant (empty when consistent).
        """
        problems: list[str] = []
        if not records:
            return ["History is empty"]

        creations = [r for r in records if r.is_creation]
        if len(creations) != 1:
            problems.append(f"Expected exactly one creation record, found {len(creations)}")
        if not records[0].is_creation:
            problems.append("First record is not the creation record")

        state = records[0].state_to
        for record in records[1:]:
            if record.is_creation:
                continue
            if record.state_from != state:
                problems.append(
                    f"Record {record.id} leaves '{record.state_from}' but the entity was in '{state}'"
                )
            if not record.is_failure:
                state = record.state_to

        if state != entity.state:
            problems.append(
                f"History ends in '{state}' but the entity is in '{entity.state}'"
            )
        return problems

    @staticmethod
    def derive_state(records: list[HistoryRecord]) -> str | None:
        """Fold a history into the state it leads to.

        Failed attempts leave the state unchanged. Returns None for an empty
        history.
        """
        state: str | None = None
        for record in records:
            if record.is_failure:
                continue
            state = record.state_to
        return state
