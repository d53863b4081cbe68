"""Tests for StateMachineEngine wiring and entity operations."""

import asyncio
from pathlib import Path

import pytest
import yaml

from fsmengine.domain.errors import (
    AlreadyExistsError,
    ConfigurationError,
    NoApplicableTransitionError,
    NotFoundError,
    TransitionFailedError,
)
from fsmengine.domain.models.history import HistoryQuery
from fsmengine.engine import StateMachineEngine
from fsmengine.infrastructure.config.settings import EngineSettings
from fsmengine.infrastructure.state_store.memory_store import InMemoryStateStore


class TestEngineInitialization:
    """Tests for StateMachineEngine construction."""

    def test_config_from_dict(self, observability) -> None:
        """Test that a dictionary is turned into EngineSettings."""
        engine = StateMachineEngine(
            observability_manager=observability,
            config={"state_store_backend": "memory", "lock_timeout_seconds": 1.5},
        )

        assert isinstance(engine.state_store, InMemoryStateStore)
        assert engine.observability_manager is observability

    def test_invalid_config_type(self, observability) -> None:
        """Test that unsupported config types raise ValueError."""
        with pytest.raises(ValueError, match="Invalid config type"):
            StateMachineEngine(observability_manager=observability, config="memory")  # type: ignore[arg-type]

    def test_injected_dependencies_are_used(
        self, state_store: InMemoryStateStore, observability, registry, settings
    ) -> None:
        engine = StateMachineEngine(
            state_store=state_store,
            observability_manager=observability,
            config=settings,
            registry=registry,
        )

        assert engine.state_store is state_store
        assert engine.registry is registry

    @pytest.mark.asyncio
    async def test_context_manager_imports_configured_file(
        self, tmp_path: Path, observability, state_store: InMemoryStateStore
    ) -> None:
        """Test that machine_config_file is imported on entry."""
        config_file = tmp_path / "machines.yaml"
        config_file.write_text(
            yaml.dump(
                {
                    "machines": [
                        {
                            "machine": "door",
                            "states": [
                                {"state": "closed", "state_type": "initial"},
                                {"state": "open"},
                            ],
                            "transitions": [
                                {"state_from": "closed", "state_to": "open"},
                                {"state_from": "open", "state_to": "closed"},
                            ],
                        }
                    ]
                }
            )
        )
        settings = EngineSettings(machine_config_file=str(config_file))

        async with StateMachineEngine(
            state_store=state_store, observability_manager=observability, config=settings
        ) as engine:
            await engine.add_entity("door", "front")
            outcome = await engine.transition("door", "front")

        assert outcome.state_to == "open"
        assert await state_store.list_machine_names() == ["door"]


class TestOrderLifecycle:
    """End-to-end tests over the order machine."""

    @pytest.mark.asyncio
    async def test_order_walks_to_final_state(self, engine: StateMachineEngine) -> None:
        """Test new -> paid -> shipped and nothing after the final state."""
        entity = await engine.add_entity("order", "1")
        assert entity.state == "new"

        assert (await engine.transition("order", "1")).state_to == "paid"
        assert (await engine.transition("order", "1")).state_to == "shipped"
        with pytest.raises(NoApplicableTransitionError):
            await engine.transition("order", "1")

        assert await engine.get_state("order", "1") == "shipped"
        history = await engine.get_history("order", "1")
        assert [(r.state_from, r.state_to) for r in history] == [
            ("new", "new"),
            ("new", "paid"),
            ("paid", "shipped"),
        ]
        assert history[0].is_creation
        assert history[1].changetime_previous == history[0].changetime
        assert history[2].changetime_previous == history[1].changetime

    @pytest.mark.asyncio
    async def test_duplicate_entity(self, engine: StateMachineEngine) -> None:
        """Test that adding an existing entity fails without writing history."""
        await engine.add_entity("order", "1")

        with pytest.raises(AlreadyExistsError):
            await engine.add_entity("order", "1")

        assert len(await engine.get_history("order", "1")) == 1

    @pytest.mark.asyncio
    async def test_edges_out_of_final_state_are_ignored(self, engine: StateMachineEngine) -> None:
        """Test that a configured edge leaving a final state never fires."""
        await engine.configuration.define_machine("ticket")
        await engine.configuration.add_state("ticket", "open", "initial")
        await engine.configuration.add_state("ticket", "closed", "final")
        await engine.configuration.add_transition("ticket", "open", "closed")
        await engine.configuration.add_transition("ticket", "closed", "open")

        await engine.add_entity("ticket", "t1")
        assert (await engine.transition("ticket", "t1")).state_to == "closed"

        with pytest.raises(NoApplicableTransitionError):
            await engine.transition("ticket", "t1")
        with pytest.raises(NoApplicableTransitionError):
            await engine.transition("ticket", "t1", "open")
        assert await engine.get_state("ticket", "t1") == "closed"

    @pytest.mark.asyncio
    async def test_entity_id_kept_verbatim(self, engine: StateMachineEngine) -> None:
        """Test that ids with surrounding whitespace are stored and found as given."""
        entity = await engine.add_entity("order", " 123 ")
        assert entity.entity_id == " 123 "

        assert await engine.get_state("order", " 123 ") == "new"
        outcome = await engine.transition("order", " 123 ")
        assert outcome.state_to == "paid"
        history = await engine.query_history(HistoryQuery(entity_id=" 123 "))
        assert [r.state_to for r in history] == ["new", "paid"]
        with pytest.raises(NotFoundError):
            await engine.get_state("order", "123")

    @pytest.mark.asyncio
    async def test_unknown_machine(self, engine: StateMachineEngine) -> None:
        with pytest.raises(NotFoundError):
            await engine.add_entity("invoice", "1")

    @pytest.mark.asyncio
    async def test_invalid_machine_blocks_entity_operations(
        self, engine: StateMachineEngine, order_config_factory
    ) -> None:
        """Test that entities cannot be added to a machine that fails to load."""
        await engine.configuration.save_machine(
            order_config_factory(ship_command="unregistered")
        )

        with pytest.raises(ConfigurationError):
            await engine.add_entity("order", "1")

    @pytest.mark.asyncio
    async def test_registration_after_failed_load(
        self, engine: StateMachineEngine, order_config_factory
    ) -> None:
        """Test that registering the missing rule makes the machine usable."""
        await engine.configuration.save_machine(order_config_factory(paid_rule="is-paid"))
        with pytest.raises(ConfigurationError):
            await engine.load_machine("order")

        engine.register_rule("is-paid", lambda ctx: ctx.attributes.get("paid", False))
        await engine.add_entity("order", "1")
        outcome = await engine.transition("order", "1", attributes={"paid": True})

        assert outcome.rule == "is-paid"

    @pytest.mark.asyncio
    async def test_find_entities_by_state(self, engine: StateMachineEngine) -> None:
        for entity_id in ("1", "2", "3"):
            await engine.add_entity("order", entity_id)
        await engine.transition("order", "2")

        assert await engine.find_entities_by_state("order", "new") == ["1", "3"]
        assert await engine.find_entities_by_state("order", "paid") == ["2"]
        assert await engine.find_entities_by_state("order", "shipped") == []
        with pytest.raises(NotFoundError):
            await engine.find_entities_by_state("order", "lost")

    @pytest.mark.asyncio
    async def test_query_history_filters(self, engine: StateMachineEngine) -> None:
        """Test history queries by entity, target state and failures."""

        def ship(ctx) -> bool:
            return False

        engine.register_command("ship", ship)
        await engine.configuration.define_machine("parcel")
        await engine.configuration.add_state("parcel", "packed", "initial")
        await engine.configuration.add_state("parcel", "sent", "final")
        await engine.configuration.add_transition("parcel", "packed", "sent", command="ship")
        await engine.add_entity("order", "1")
        await engine.add_entity("parcel", "p1")
        await engine.transition("order", "1")
        with pytest.raises(TransitionFailedError):
            await engine.transition("parcel", "p1")

        paid = await engine.query_history(machine="order", state_to="paid")
        failures = await engine.query_history(HistoryQuery(failures_only=True))
        everything = await engine.query_history()

        assert [r.entity_id for r in paid] == ["1"]
        assert len(failures) == 1
        assert failures[0].machine == "parcel"
        assert failures[0].failure is not None
        assert failures[0].failure.code == "command_rejected"
        assert len(everything) == 4


class TestConcurrency:
    """Tests for concurrent transitions of one entity."""

    @pytest.mark.asyncio
    async def test_concurrent_transitions_commit_once(self, engine: StateMachineEngine) -> None:
        """Test that two racing calls for the same edge produce one commit."""
        started = asyncio.Event()

        async def pay(ctx) -> None:
            started.set()
            await asyncio.sleep(0.01)

        engine.register_command("pay", pay)
        config = await engine.configuration.get_machine("order")
        transitions = [
            t.model_copy(update={"command": "pay"}) if t.state_to == "paid" else t
            for t in config.transitions
        ]
        await engine.configuration.save_machine(
            config.model_copy(update={"transitions": transitions})
        )
        await engine.add_entity("order", "1")

        results = await asyncio.gather(
            engine.transition("order", "1", "paid"),
            engine.transition("order", "1", "paid"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], NoApplicableTransitionError)
        assert started.is_set()
        history = await engine.get_history("order", "1")
        assert [(r.state_from, r.state_to) for r in history].count(("new", "paid")) == 1
        assert await engine.get_state("order", "1") == "paid"

    @pytest.mark.asyncio
    async def test_different_entities_do_not_block(self, engine: StateMachineEngine) -> None:
        """Test that locks are per entity."""
        for entity_id in ("1", "2"):
            await engine.add_entity("order", entity_id)

        async with engine.state_store.entity_lock("order", "1"):
            outcome = await engine.transition("order", "2", timeout=1.0)

        assert outcome.state_to == "paid"


class TestReconcile:
    """Tests for reconciling stored state with history."""

    @pytest.mark.asyncio
    async def test_consistent_entity(self, engine: StateMachineEngine) -> None:
        await engine.add_entity("order", "1")
        await engine.transition("order", "1")

        report = await engine.reconcile("order", "1")

        assert report.consistent
        assert report.stored_state == report.derived_state == "paid"
        assert report.history_length == 2
        assert not report.repaired

    @pytest.mark.asyncio
    async def test_repair_restores_derived_state(
        self, engine: StateMachineEngine, observability
    ) -> None:
        """Test that a stored state diverging from history is detected and repaired."""
        await engine.add_entity("order", "1")
        await engine.transition("order", "1")
        entity = await engine.get_entity("order", "1")
        await engine.state_store.commit(entity.model_copy(update={"state": "new"}), None)

        report = await engine.reconcile("order", "1")
        assert not report.consistent
        assert report.problems == ["History ends in 'paid' but the entity is in 'new'"]
        assert await engine.get_state("order", "1") == "new"

        repaired = await engine.reconcile("order", "1", repair=True)

        assert repaired.repaired
        assert observability.logs[-1]["message"] == "Repaired entity state from history"
        assert repaired.stored_state == "new"
        assert repaired.derived_state == "paid"
        assert await engine.get_state("order", "1") == "paid"
        assert len(await engine.get_history("order", "1")) == 2
        assert (await engine.reconcile("order", "1")).consistent

    @pytest.mark.asyncio
    async def test_reconcile_unknown_entity(self, engine: StateMachineEngine) -> None:
        with pytest.raises(NotFoundError):
            await engine.reconcile("order", "missing")
