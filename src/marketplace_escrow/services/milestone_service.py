"""Milestone Service: escrow actions on individual project milestones.

Each milestone is its own all-or-nothing escrow: it is funded by exactly
one completed escrow_fund row for its amount and released by exactly one
escrow_release row for the same amount. ``released`` and ``refunded`` are
final.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import (
    EventType,
    MilestoneStatus,
    OrderStatus,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import LedgerInvariantError, NotFoundError
from marketplace_escrow.domain.state_machine import MilestoneStateMachine, OrderStateMachine
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    MilestoneRepository,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.guards import fire_transition
from marketplace_escrow.services.ledger_service import LedgerService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.infrastructure.database.orm_models import (
        Milestone,
        Order,
        Transaction,
    )

logger = get_logger(__name__)


class MilestoneService:
    """Funding, delivery and release of project milestones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._milestone_repo = MilestoneRepository(session)
        self._order_repo = OrderRepository(session)
        self._event_repo = EventRepository(session)
        self._ledger = LedgerService(session)

    async def get_for_order(self, order: Order, milestone_id: uuid.UUID) -> Milestone:
        """Fetch a milestone, insisting it belongs to ``order``."""
        milestone = await self._milestone_repo.get_by_id(milestone_id)
        if milestone is None or milestone.order_id != order.id:
            raise NotFoundError("Milestone", str(milestone_id))
        return milestone

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    async def apply_funding(self, tx: Transaction) -> Milestone:
        """Mark a milestone funded from its completed escrow_fund row.

        Funding the first milestone of a pending_payment order moves the
        order to in_progress. Funding that lands while the order is disputed
        is frozen immediately with the rest of the escrow.
        """
        if tx.type != TransactionType.ESCROW_FUND.value or tx.milestone_id is None:
            raise LedgerInvariantError(f"Transaction {tx.id} is not a milestone funding")
        if tx.status != TransactionStatus.COMPLETED.value:
            raise LedgerInvariantError(f"Transaction {tx.id} is not completed")

        milestone = await self._milestone_repo.get_by_id(tx.milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone", str(tx.milestone_id))
        if tx.amount != milestone.amount:
            raise LedgerInvariantError(
                f"Funding {tx.amount} does not cover milestone amount {milestone.amount}"
            )

        order = await self._order_repo.get_by_id(milestone.order_id)
        if order is None:
            raise NotFoundError("Order", str(milestone.order_id))

        # Validate every transition before writing any of them
        fire_transition(MilestoneStateMachine, milestone.status, "fund")
        cascade_order = order.status == OrderStatus.PENDING_PAYMENT.value
        if cascade_order:
            fire_transition(OrderStateMachine, order.status, "first_milestone_funded")
        freeze = order.status == OrderStatus.DISPUTED.value

        await self._milestone_repo.update_status(
            milestone,
            MilestoneStatus.PENDING.value,
            MilestoneStatus.FUNDED.value,
            funded_at=datetime.now(UTC),
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.MILESTONE_FUNDED,
            old_status=MilestoneStatus.PENDING,
            new_status=MilestoneStatus.FUNDED,
            metadata={"milestone_id": str(milestone.id), "reference": tx.provider_reference},
        )

        if cascade_order:
            old_status = order.status
            await self._order_repo.update_status(
                order,
                old_status,
                OrderStatus.IN_PROGRESS.value,
                delivery_deadline=delivery_deadline(order.delivery_days),
            )
            await self._event_repo.record(
                order_id=order.id,
                event_type=EventType.PAYMENT_CONFIRMED,
                old_status=old_status,
                new_status=OrderStatus.IN_PROGRESS,
                metadata={"milestone_id": str(milestone.id)},
            )

        if freeze:
            await self.transition(milestone, "dispute_frozen")

        logger.info(
            "milestone.funded",
            order_id=str(order.id),
            milestone_id=str(milestone.id),
            amount=milestone.amount,
            order_status=order.status,
        )
        return milestone

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self, order: Order, milestone: Milestone, actor: str = "SYSTEM") -> Transaction:
        """Release a delivered milestone's escrow to the seller."""
        fire_transition(MilestoneStateMachine, milestone.status, "release")

        await self._milestone_repo.update_status(
            milestone,
            MilestoneStatus.DELIVERED.value,
            MilestoneStatus.RELEASED.value,
            released_at=datetime.now(UTC),
        )
        tx = await self._ledger.record_completed(
            order,
            TransactionType.ESCROW_RELEASE,
            milestone.amount,
            user_id=order.seller_id,
            milestone=milestone,
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.MILESTONE_RELEASED,
            old_status=MilestoneStatus.DELIVERED,
            new_status=MilestoneStatus.RELEASED,
            actor=actor,
            metadata={"milestone_id": str(milestone.id), "amount": milestone.amount},
        )

        logger.info(
            "milestone.released",
            order_id=str(order.id),
            milestone_id=str(milestone.id),
            amount=milestone.amount,
        )
        return tx

    # ------------------------------------------------------------------
    # Generic transitions (delivery loop, dispute freeze and resolution)
    # ------------------------------------------------------------------

    async def transition(self, milestone: Milestone, event_name: str, **values: object) -> Milestone:
        """Fire a milestone event and persist it with a CAS write."""
        old_status = milestone.status
        new_status = fire_transition(MilestoneStateMachine, old_status, event_name)
        await self._milestone_repo.update_status(milestone, old_status, new_status, **values)
        logger.debug(
            "milestone.transition",
            milestone_id=str(milestone.id),
            event_name=event_name,
            old_status=old_status,
            new_status=new_status,
        )
        return milestone


def delivery_deadline(delivery_days: int) -> datetime:
    """Deadline counted from the moment work can start."""
    return datetime.now(UTC) + timedelta(days=delivery_days)
