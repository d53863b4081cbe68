"""
Order Lifecycle Example

This example demonstrates the fundamental usage of the state machine engine:
- Registering rules and commands
- Importing machine definitions from YAML
- Adding entities and transitioning them
- Handling failed and rejected transitions
- Reading the history of an entity

Prerequisites:
    Install from source:
    pip install -e .

Run with: python order-lifecycle.py
"""

import asyncio
from pathlib import Path

from fsmengine.domain.errors import NoApplicableTransitionError, TransitionFailedError
from fsmengine.domain.models.entity import EntityContext
from fsmengine.domain.models.history import FailureDetail
from fsmengine.engine import StateMachineEngine

STOCK = {"book": 1}


def is_paid(ctx: EntityContext) -> bool:
    return ctx.attributes.get("paid", False)


def is_expired(ctx: EntityContext) -> bool:
    return ctx.attributes.get("expired", False)


async def reserve_stock(ctx: EntityContext) -> FailureDetail | None:
    item = ctx.attributes["item"]
    if STOCK.get(item, 0) < 1:
        return FailureDetail(code="no-stock", message=f"'{item}' is sold out")
    STOCK[item] -= 1
    return None


async def ship(ctx: EntityContext) -> None:
    print(f"  shipping order {ctx.entity_id}")


async def main():
    """Main example function walking two orders through their lifecycle."""

    print("=" * 80)
    print("Order Lifecycle Example")
    print("=" * 80)
    print()

    async with StateMachineEngine(config={"json_logs": False, "log_level": "WARNING"}) as engine:
        # ============================================================================
        # Step 1: Register capabilities and import machines
        # ============================================================================

        print("Step 1: Registering rules and commands...")
        engine.register_rule("is-paid", is_paid)
        engine.register_rule("is-expired", is_expired)
        engine.register_command("reserve-stock", reserve_stock)
        engine.register_command("ship", ship)
        machines = await engine.load_configuration_file(Path(__file__).with_name("machines.yaml"))
        print(f"✓ Imported machines: {', '.join(machines)}")
        print()

        # ============================================================================
        # Step 2: Move the first order to its final state
        # ============================================================================

        print("Step 2: Paying and shipping order 1...")
        await engine.add_entity("order", "1")
        outcome = await engine.transition("order", "1", attributes={"paid": True, "item": "book"})
        print(f"✓ {outcome.state_from} -> {outcome.state_to}")
        outcome = await engine.transition("order", "1")
        print(f"✓ {outcome.state_from} -> {outcome.state_to}")
        print()

        # ============================================================================
        # Step 3: Failed and rejected attempts
        # ============================================================================

        print("Step 3: Paying order 2 for a sold out item...")
        await engine.add_entity("order", "2")
        try:
            await engine.transition("order", "2", attributes={"paid": True, "item": "book"})
        except TransitionFailedError as e:
            print(f"✗ Failed: [{e.failure.code}] {e.failure.message}")

        try:
            await engine.transition("order", "2", attributes={"paid": False})
        except NoApplicableTransitionError as e:
            print(f"✗ Rejected: {e}")

        outcome = await engine.transition("order", "2", "cancelled", attributes={"expired": True})
        print(f"✓ {outcome.state_from} -> {outcome.state_to}")
        print()

        # ============================================================================
        # Step 4: History
        # ============================================================================

        print("Step 4: History of order 2")
        for record in await engine.get_history("order", "2"):
            detail = f" [{record.failure.code}]" if record.failure else ""
            print(f"  {record.changetime.isoformat()} {record.state_from} -> {record.state_to}{detail}")
        print()


if __name__ == "__main__":
    asyncio.run(main())
