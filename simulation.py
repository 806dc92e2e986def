#!/usr/bin/env python3
"""Marketplace Escrow: End-to-End Simulation.

Simulates four scenarios with BuyerBot, SellerBot and AdminBot actors,
settling payments through the manual provider (no gateway credentials):

    Scenario 1: Service Order Happy Path
        - Buyer orders the basic tier of a service (R500.00)
        - Payment settles -> requirements -> delivery -> revision -> redelivery
        - Buyer accepts -> COMPLETED, seller earnings released

    Scenario 2: Milestone Project
        - Buyer awards a bid with two milestones
        - Each milestone is funded, delivered and released in turn
        - Order completes once the last milestone is released

    Scenario 3: Dispute With Partial Refund
        - Service order is paid and work starts
        - Buyer disputes, admin refunds part and releases the rest

    Scenario 4: Duplicate Notification
        - The same settlement is replayed; the second one is a no-op

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from marketplace_escrow.domain.collaborators import Actor  # noqa: E402
from marketplace_escrow.domain.enums import ActorRole, PaymentProvider  # noqa: E402
from marketplace_escrow.infrastructure.database.orm_models import (  # noqa: E402
    Bid,
    Project,
    Service,
)
from marketplace_escrow.services import (  # noqa: E402
    DisputeService,
    LedgerService,
    MilestoneDraft,
    OrderService,
    PaymentService,
)

# Module-level state
_sqlite_engine = None
_sqlite_session_factory = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _sqlite_session_factory

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine

        from marketplace_escrow.infrastructure.database.engine import (
            build_session_factory,
            create_schema,
        )

        _sqlite_engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
        _sqlite_session_factory = build_session_factory(_sqlite_engine)
        await create_schema(_sqlite_engine)
        logger.info("database.sqlite_initialized")
    else:
        from marketplace_escrow.infrastructure.database.engine import init_db

        await init_db()


def get_session() -> Any:
    """Get a fresh database session."""
    if _sqlite_session_factory is not None:
        return _sqlite_session_factory()

    from marketplace_escrow.infrastructure.database.engine import _get_session_factory

    return _get_session_factory()()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _sqlite_session_factory

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _sqlite_session_factory = None
    else:
        from marketplace_escrow.infrastructure.database.engine import close_db

        await close_db()


# ---------------------------------------------------------------------------
# Bot Actors
# ---------------------------------------------------------------------------
@dataclass
class SellerBot:
    """Simulated seller who lists services, bids and delivers work."""

    actor: Actor = field(
        default_factory=lambda: Actor(id=uuid.uuid4(), email="seller@example.com", name="Sam Seller")
    )

    async def list_service(self, session: Any, price: int) -> uuid.UUID:
        service = Service(
            seller_id=self.actor.id,
            title="Logo design",
            delivery_days=3,
            pricing_tiers={"basic": {"price": price, "deliveryDays": 3, "revisions": 2}},
            is_active=True,
        )
        session.add(service)
        await session.commit()
        logger.info("🟢 SELLER: Service listed", service_id=str(service.id), price=price)
        return service.id

    async def bid(self, session: Any, project_id: uuid.UUID, amount: int) -> uuid.UUID:
        bid = Bid(project_id=project_id, bidder_id=self.actor.id, amount=amount, delivery_days=14)
        session.add(bid)
        await session.commit()
        logger.info("🟢 SELLER: Bid placed", bid_id=str(bid.id), amount=amount)
        return bid.id

    async def deliver(
        self, session: Any, order_id: uuid.UUID, message: str, milestone_id: uuid.UUID | None = None
    ) -> None:
        svc = OrderService(session)
        await svc.deliver(self.actor, order_id, message=message, milestone_id=milestone_id)
        await session.commit()
        logger.info("🟢 SELLER: Work delivered", order_id=str(order_id))


@dataclass
class BuyerBot:
    """Simulated buyer who orders, pays and accepts work."""

    actor: Actor = field(
        default_factory=lambda: Actor(id=uuid.uuid4(), email="buyer@example.com", name="Bea Buyer")
    )

    async def order_service(self, session: Any, service_id: uuid.UUID) -> uuid.UUID:
        svc = OrderService(session)
        order = await svc.create_service_order(self.actor, service_id, tier="basic")
        await session.commit()
        logger.info(
            "🔵 BUYER: Order placed",
            order_number=order.order_number,
            total=order.total_amount,
        )
        return order.id

    async def post_project(self, session: Any, title: str) -> uuid.UUID:
        project = Project(buyer_id=self.actor.id, title=title)
        session.add(project)
        await session.commit()
        return project.id

    async def award(
        self, session: Any, bid_id: uuid.UUID, milestones: list[MilestoneDraft]
    ) -> uuid.UUID:
        svc = OrderService(session)
        order = await svc.create_project_order(self.actor, bid_id, milestones)
        await session.commit()
        logger.info("🔵 BUYER: Bid awarded", order_number=order.order_number)
        return order.id

    async def pay(
        self, session: Any, order_id: uuid.UUID, milestone_id: uuid.UUID | None = None
    ) -> str:
        """Initiate a manual payment and settle it. Returns the reference."""
        svc = PaymentService(session)
        initiation = await svc.initiate_payment(
            self.actor, order_id, PaymentProvider.MANUAL, milestone_id=milestone_id
        )
        reference = initiation.transaction.provider_reference
        result = await svc.settle_manually(self.actor, reference)
        await session.commit()
        logger.info(
            "🔵 BUYER: Payment settled",
            reference=reference,
            amount=initiation.transaction.amount,
            outcome=result.outcome.value,
        )
        return reference

    async def submit_requirements(self, session: Any, order_id: uuid.UUID) -> None:
        svc = OrderService(session)
        await svc.submit_requirements(self.actor, order_id, "Blue and white, square format")
        await session.commit()

    async def request_revision(self, session: Any, order_id: uuid.UUID, reason: str) -> None:
        svc = OrderService(session)
        await svc.request_revision(self.actor, order_id, reason=reason)
        await session.commit()
        logger.info("🔵 BUYER: Revision requested", reason=reason)

    async def accept(
        self, session: Any, order_id: uuid.UUID, milestone_id: uuid.UUID | None = None
    ) -> str:
        svc = OrderService(session)
        order = await svc.accept_delivery(self.actor, order_id, milestone_id=milestone_id)
        await session.commit()
        logger.info("🔵 BUYER: Delivery accepted", order_status=order.status)
        return order.status

    async def dispute(self, session: Any, order_id: uuid.UUID) -> uuid.UUID:
        svc = DisputeService(session)
        dispute = await svc.open_dispute(
            self.actor,
            order_id,
            category="not_as_described",
            title="Wrong colours",
            description="The delivered logo does not use the agreed colours.",
        )
        await session.commit()
        logger.info("🔵 BUYER: Dispute opened", dispute_id=str(dispute.id))
        return dispute.id

    async def check_status(self, session: Any, order_id: uuid.UUID) -> dict:
        svc = OrderService(session)
        return await svc.get_status(self.actor, order_id)


@dataclass
class AdminBot:
    """Simulated back-office admin who rules on disputes."""

    actor: Actor = field(default_factory=lambda: Actor(id=uuid.uuid4(), role=ActorRole.ADMIN))

    async def resolve(
        self, session: Any, dispute_id: uuid.UUID, resolution: str, amount: int | None = None
    ) -> None:
        svc = DisputeService(session)
        dispute = await svc.resolve(
            self.actor, dispute_id, resolution, notes="Simulated ruling", amount=amount
        )
        await session.commit()
        logger.info(
            "🟣 ADMIN: Dispute resolved",
            resolution=dispute.resolution,
            refunded=dispute.resolution_amount,
        )


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------
def section(title: str) -> None:
    print(f"\n{'─' * 70}\n  {title}\n{'─' * 70}")


async def print_ledger(session: Any, order_id: uuid.UUID) -> None:
    ledger = LedgerService(session)
    rows = await ledger.list_for_order(order_id)
    print("\n  📒 Ledger:")
    for tx in rows:
        print(f"     {tx.type:<15} {tx.amount:>10}  {tx.status:<10} {tx.provider_reference}")


async def print_audit_trail(session: Any, actor: Actor, order_id: uuid.UUID) -> None:
    svc = OrderService(session)
    events = await svc.get_events(actor, order_id)
    print("\n  📜 Audit trail:")
    for event in events:
        print(f"     {event.event_type:<26} {event.old_status or '-':>22} -> {event.new_status}")


# ===========================================================================
# Scenario 1: Service Order Happy Path
# ===========================================================================
async def scenario_1_service_happy_path() -> None:
    print("\n" + "=" * 70)
    print("  SCENARIO 1: Service Order Happy Path")
    print("=" * 70)

    buyer, seller = BuyerBot(), SellerBot()
    async with get_session() as session:
        section("Step 1: Order and pay")
        service_id = await seller.list_service(session, price=50000)
        order_id = await buyer.order_service(session, service_id)
        await buyer.pay(session, order_id)

        section("Step 2: Requirements, delivery and one revision")
        await buyer.submit_requirements(session, order_id)
        await seller.deliver(session, order_id, "First draft attached")
        await buyer.request_revision(session, order_id, "Make the text larger")
        await seller.deliver(session, order_id, "Revised draft attached")

        section("Step 3: Accept")
        final_status = await buyer.accept(session, order_id)
        order = await OrderService(session).get_order(buyer.actor, order_id)
        balance = await LedgerService(session).escrow_balance(order)
        print(f"\n  ✅ Order final status: {final_status}")
        print(f"  💰 Escrow balance left: {balance}")

        await print_ledger(session, order_id)
        await print_audit_trail(session, buyer.actor, order_id)


# ===========================================================================
# Scenario 2: Milestone Project
# ===========================================================================
async def scenario_2_milestone_project() -> None:
    print("\n" + "=" * 70)
    print("  SCENARIO 2: Milestone Project")
    print("=" * 70)

    buyer, seller = BuyerBot(), SellerBot()
    async with get_session() as session:
        section("Step 1: Post, bid and award")
        project_id = await buyer.post_project(session, "Company website")
        bid_id = await seller.bid(session, project_id, amount=300000)
        order_id = await buyer.award(
            session,
            bid_id,
            [
                MilestoneDraft(title="Design", amount=100000),
                MilestoneDraft(title="Build", amount=200000),
            ],
        )
        order = await OrderService(session).get_order(buyer.actor, order_id)
        milestone_ids = [m.id for m in sorted(order.milestones, key=lambda m: m.sort_order)]

        for index, milestone_id in enumerate(milestone_ids, start=1):
            section(f"Step {index + 1}: Milestone {index}")
            await buyer.pay(session, order_id, milestone_id=milestone_id)
            await seller.deliver(session, order_id, f"Milestone {index} done", milestone_id)
            status = await buyer.accept(session, order_id, milestone_id=milestone_id)
            print(f"  ➡️  Order status after milestone {index}: {status}")

        await print_ledger(session, order_id)
        await print_audit_trail(session, buyer.actor, order_id)


# ===========================================================================
# Scenario 3: Dispute With Partial Refund
# ===========================================================================
async def scenario_3_dispute_partial_refund() -> None:
    print("\n" + "=" * 70)
    print("  SCENARIO 3: Dispute With Partial Refund")
    print("=" * 70)

    buyer, seller, admin = BuyerBot(), SellerBot(), AdminBot()
    async with get_session() as session:
        section("Step 1: Order, pay and start work")
        service_id = await seller.list_service(session, price=50000)
        order_id = await buyer.order_service(session, service_id)
        await buyer.pay(session, order_id)
        await buyer.submit_requirements(session, order_id)

        section("Step 2: Dispute and ruling")
        dispute_id = await buyer.dispute(session, order_id)
        await admin.resolve(session, dispute_id, "refund_partial", amount=20000)

        status = await buyer.check_status(session, order_id)
        print(f"\n  🛡️  Order final status: {status['status']}")
        await print_ledger(session, order_id)
        await print_audit_trail(session, buyer.actor, order_id)


# ===========================================================================
# Scenario 4: Duplicate Notification
# ===========================================================================
async def scenario_4_duplicate_notification() -> None:
    print("\n" + "=" * 70)
    print("  SCENARIO 4: Duplicate Notification")
    print("=" * 70)

    buyer, seller = BuyerBot(), SellerBot()
    async with get_session() as session:
        service_id = await seller.list_service(session, price=50000)
        order_id = await buyer.order_service(session, service_id)
        reference = await buyer.pay(session, order_id)

        section("Replaying the settlement")
        svc = PaymentService(session)
        result = await svc.settle_manually(buyer.actor, reference)
        await session.commit()
        print(f"\n  🔁 Replay outcome: {result.outcome.value}")
        await print_ledger(session, order_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_service_happy_path,
    2: scenario_2_milestone_project,
    3: scenario_3_dispute_partial_refund,
    4: scenario_4_duplicate_notification,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🚀" * 35)
        print("  MARKETPLACE ESCROW SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("🚀" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
