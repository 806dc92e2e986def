"""Order Service: core business logic for the order lifecycle.

This is the application layer that coordinates between:
    - Fee calculator (pricing frozen at creation)
    - Domain state machines (transition guards)
    - Repositories (data access, CAS status writes)
    - Ledger (escrow releases on acceptance)
    - Event log (audit trail)

Every operation authorises the actor and validates the transition before
its first write, so a refused request leaves no trace.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.collaborators import LoggingNotifier, notify_safely
from marketplace_escrow.domain.enums import (
    DeliveryType,
    EventType,
    MilestoneStatus,
    OrderStatus,
    OrderType,
    ServiceTier,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import (
    IllegalTransitionError,
    InvalidAmountError,
    InvalidRequestError,
    NotFoundError,
    RevisionLimitExceededError,
    UnauthorizedError,
)
from marketplace_escrow.domain.fees import FeeCalculator
from marketplace_escrow.domain.references import generate_order_number
from marketplace_escrow.domain.state_machine import MilestoneStateMachine, OrderStateMachine
from marketplace_escrow.infrastructure.database.orm_models import (
    Milestone,
    Order,
    OrderDelivery,
    RevisionRequest,
)
from marketplace_escrow.infrastructure.database.repositories import (
    CatalogRepository,
    DeliveryRepository,
    EventRepository,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.guards import (
    fire_transition,
    require_buyer,
    require_party,
    require_seller,
)
from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.milestone_service import MilestoneService, delivery_deadline

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.collaborators import Actor, Notifier
    from marketplace_escrow.infrastructure.database.orm_models import (
        OrderEvent,
        Transaction,
    )

logger = get_logger(__name__)


@dataclass(frozen=True)
class MilestoneDraft:
    """A milestone as proposed when a project bid is awarded."""

    title: str
    amount: int
    description: str | None = None
    due_date: datetime | None = None


class OrderService:
    """Manages the order lifecycle for service and project orders."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._fees = FeeCalculator.from_settings(self._settings)
        self._notifier = notifier or LoggingNotifier()
        self._order_repo = OrderRepository(session)
        self._catalog_repo = CatalogRepository(session)
        self._delivery_repo = DeliveryRepository(session)
        self._event_repo = EventRepository(session)
        self._ledger = LedgerService(session)
        self._milestones = MilestoneService(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_service_order(
        self,
        actor: Actor,
        service_id: uuid.UUID,
        tier: str,
        requirements: str | None = None,
        attachments: list[str] | None = None,
    ) -> Order:
        """Buy one pricing tier of a service. The order starts at pending_payment."""
        service = await self._catalog_repo.get_service(service_id)
        if service is None or not service.is_active:
            raise NotFoundError("Service", str(service_id))
        if service.seller_id == actor.id:
            raise InvalidRequestError("You cannot order your own service")

        try:
            tier_key = ServiceTier(tier).value
        except ValueError as err:
            raise InvalidRequestError(f"Unknown service tier: {tier}") from err
        tier_data = (service.pricing_tiers or {}).get(tier_key)
        if not tier_data:
            raise InvalidRequestError(f"Service does not offer the {tier_key} tier")

        fees = self._fees.calculate(tier_data.get("price"))
        delivery_days = int(tier_data.get("deliveryDays", service.delivery_days))
        revisions = int(tier_data.get("revisions", self._settings.default_revisions_allowed))

        order = Order(
            order_number=generate_order_number(),
            buyer_id=actor.id,
            seller_id=service.seller_id,
            order_type=OrderType.SERVICE.value,
            service_id=service.id,
            service_tier=tier_key,
            title=service.title,
            requirements=requirements,
            attachments=attachments,
            subtotal=fees.gross,
            buyer_fee=fees.buyer_fee,
            seller_fee=fees.seller_fee,
            total_amount=fees.buyer_total,
            seller_earnings=fees.seller_net,
            currency=self._settings.currency,
            delivery_days=delivery_days,
            revisions_allowed=revisions,
            revisions_used=0,
            status=OrderStatus.PENDING_PAYMENT.value,
            milestones=[],
        )
        order = await self._order_repo.create(order)

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.ORDER_CREATED,
            old_status=None,
            new_status=OrderStatus.PENDING_PAYMENT,
            actor=str(actor.id),
            metadata={"service_id": str(service.id), "tier": tier_key},
        )

        logger.info(
            "order.created",
            order_id=str(order.id),
            order_number=order.order_number,
            order_type=order.order_type,
            subtotal=order.subtotal,
            total_amount=order.total_amount,
        )
        await notify_safely(
            self._notifier, order.seller_id, "order.created", {"order_id": str(order.id)}
        )
        return order

    async def create_project_order(
        self,
        actor: Actor,
        bid_id: uuid.UUID,
        milestones: list[MilestoneDraft],
    ) -> Order:
        """Award a bid: the order's subtotal is the sum of its milestones."""
        if not milestones:
            raise InvalidRequestError("A project order needs at least one milestone")
        for draft in milestones:
            if isinstance(draft.amount, bool) or not isinstance(draft.amount, int):
                raise InvalidAmountError("Milestone amounts must be integer minor units")
            if draft.amount <= 0:
                raise InvalidAmountError("Milestone amounts must be positive")

        bid = await self._catalog_repo.get_bid(bid_id)
        if bid is None:
            raise NotFoundError("Bid", str(bid_id))
        project = await self._catalog_repo.get_project(bid.project_id)
        if project is None:
            raise NotFoundError("Project", str(bid.project_id))
        if project.buyer_id != actor.id:
            raise UnauthorizedError("Only the project owner can award a bid")
        if bid.bidder_id == actor.id:
            raise InvalidRequestError("You cannot award a bid to yourself")
        if bid.status != "pending":
            raise IllegalTransitionError(bid.status, "accepted")

        fees = self._fees.calculate(sum(d.amount for d in milestones))

        order = Order(
            order_number=generate_order_number(),
            buyer_id=actor.id,
            seller_id=bid.bidder_id,
            order_type=OrderType.PROJECT.value,
            project_id=project.id,
            bid_id=bid.id,
            title=project.title,
            subtotal=fees.gross,
            buyer_fee=fees.buyer_fee,
            seller_fee=fees.seller_fee,
            total_amount=fees.buyer_total,
            seller_earnings=fees.seller_net,
            currency=self._settings.currency,
            delivery_days=bid.delivery_days,
            revisions_allowed=self._settings.default_revisions_allowed,
            revisions_used=0,
            status=OrderStatus.PENDING_PAYMENT.value,
            milestones=[
                Milestone(
                    title=draft.title,
                    description=draft.description,
                    amount=draft.amount,
                    sort_order=index,
                    due_date=draft.due_date,
                    status=MilestoneStatus.PENDING.value,
                )
                for index, draft in enumerate(milestones)
            ],
        )
        order = await self._order_repo.create(order)
        await self._catalog_repo.accept_bid(bid)

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.ORDER_CREATED,
            old_status=None,
            new_status=OrderStatus.PENDING_PAYMENT,
            actor=str(actor.id),
            metadata={"bid_id": str(bid.id), "milestones": len(milestones)},
        )

        logger.info(
            "order.created",
            order_id=str(order.id),
            order_number=order.order_number,
            order_type=order.order_type,
            subtotal=order.subtotal,
            milestones=len(milestones),
        )
        await notify_safely(
            self._notifier, order.seller_id, "bid.accepted", {"order_id": str(order.id)}
        )
        return order

    # ------------------------------------------------------------------
    # Payment confirmation (called by the settlement reconciler)
    # ------------------------------------------------------------------

    async def mark_paid(self, order_id: uuid.UUID, actor: str = "SYSTEM") -> Order:
        """pending_payment -> pending_requirements, backed by a completed payment."""
        order = await self._get_order_or_raise(order_id)
        new_status = fire_transition(OrderStateMachine, order.status, "payment_confirmed")
        if not await self._ledger.has_completed_payment(order):
            raise IllegalTransitionError(order.status, new_status)

        old_status = order.status
        await self._order_repo.update_status(order, old_status, new_status)
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.PAYMENT_CONFIRMED,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            metadata={"total_amount": order.total_amount},
        )

        logger.info("order.paid", order_id=str(order.id), total_amount=order.total_amount)
        await notify_safely(self._notifier, order.seller_id, "order.paid", {"order_id": str(order.id)})
        await notify_safely(
            self._notifier, order.buyer_id, "payment.confirmed", {"order_id": str(order.id)}
        )
        return order

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    async def submit_requirements(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        requirements: str,
        attachments: list[str] | None = None,
    ) -> Order:
        """Buyer hands over requirements; work starts and the deadline is set."""
        order = await self._get_order_or_raise(order_id)
        require_buyer(actor, order)
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "requirements_submitted")

        values: dict = {
            "requirements": requirements,
            "delivery_deadline": delivery_deadline(order.delivery_days),
        }
        if attachments is not None:
            values["attachments"] = attachments
        await self._order_repo.update_status(order, old_status, new_status, **values)

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.REQUIREMENTS_SUBMITTED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
        )

        logger.info("order.requirements_submitted", order_id=str(order.id))
        await notify_safely(
            self._notifier, order.seller_id, "order.started", {"order_id": str(order.id)}
        )
        return order

    # ------------------------------------------------------------------
    # Delivery loop
    # ------------------------------------------------------------------

    async def deliver(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        message: str,
        milestone_id: uuid.UUID | None = None,
        attachments: list[str] | None = None,
    ) -> OrderDelivery:
        """Seller delivers work (a milestone's work, for project orders)."""
        order = await self._get_order_or_raise(order_id)
        require_seller(actor, order)
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "seller_delivers")

        milestone = None
        if order.is_project:
            if milestone_id is None:
                raise InvalidRequestError("Project deliveries must name a milestone")
            milestone = await self._milestones.get_for_order(order, milestone_id)
            fire_transition(MilestoneStateMachine, milestone.status, "deliver")

        delivery_type = (
            DeliveryType.REVISION
            if old_status == OrderStatus.REVISION_REQUESTED.value
            else DeliveryType.INITIAL
        )
        now = datetime.now(UTC)

        await self._order_repo.update_status(order, old_status, new_status, delivered_at=now)
        if milestone is not None:
            await self._milestones.transition(milestone, "deliver", delivered_at=now)

        delivery = await self._delivery_repo.create(
            OrderDelivery(
                order_id=order.id,
                milestone_id=milestone.id if milestone is not None else None,
                message=message,
                attachments=attachments,
                delivery_type=delivery_type.value,
            )
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.WORK_DELIVERED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={
                "delivery_id": str(delivery.id),
                "delivery_type": delivery_type.value,
                "milestone_id": str(milestone.id) if milestone is not None else None,
            },
        )

        logger.info(
            "order.delivered",
            order_id=str(order.id),
            delivery_type=delivery_type.value,
            milestone_id=str(milestone.id) if milestone is not None else None,
        )
        await notify_safely(
            self._notifier, order.buyer_id, "order.delivered", {"order_id": str(order.id)}
        )
        return delivery

    async def request_revision(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        reason: str,
        details: str | None = None,
    ) -> RevisionRequest:
        """Buyer asks for changes to the latest delivery, within the revision allowance."""
        order = await self._get_order_or_raise(order_id)
        require_buyer(actor, order)
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "revision_requested")
        if order.revisions_used >= order.revisions_allowed:
            raise RevisionLimitExceededError(order.revisions_allowed)

        milestone = self._delivered_milestone(order) if order.is_project else None
        if milestone is not None:
            fire_transition(MilestoneStateMachine, milestone.status, "rework")

        await self._order_repo.update_status(
            order,
            old_status,
            new_status,
            revisions_used=order.revisions_used + 1,
        )
        if milestone is not None:
            await self._milestones.transition(milestone, "rework")

        latest = await self._delivery_repo.latest_for_order(order.id)
        revision = await self._delivery_repo.create_revision(
            RevisionRequest(
                order_id=order.id,
                delivery_id=latest.id if latest is not None else None,
                reason=reason,
                details=details,
            )
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.REVISION_REQUESTED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={
                "revision_id": str(revision.id),
                "revisions_used": order.revisions_used,
            },
        )

        logger.info(
            "order.revision_requested",
            order_id=str(order.id),
            revisions_used=order.revisions_used,
            revisions_allowed=order.revisions_allowed,
        )
        await notify_safely(
            self._notifier, order.seller_id, "order.revision_requested", {"order_id": str(order.id)}
        )
        return revision

    async def accept_delivery(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
    ) -> Order:
        """Buyer accepts the delivery and the escrow is released to the seller.

        Service orders release seller_earnings and complete. Project orders
        release the delivered milestone; the order completes once every
        milestone is released and otherwise goes back to in_progress.
        """
        order = await self._get_order_or_raise(order_id)
        require_buyer(actor, order)
        old_status = order.status
        now = datetime.now(UTC)

        if not order.is_project:
            new_status = fire_transition(OrderStateMachine, old_status, "delivery_accepted")
            # The status write claims the order before any money moves
            await self._order_repo.update_status(
                order, old_status, new_status, accepted_at=now, completed_at=now
            )
            await self._ledger.record_completed(
                order,
                TransactionType.ESCROW_RELEASE,
                order.seller_earnings,
                user_id=order.seller_id,
            )
            released_amount = order.seller_earnings
        else:
            if milestone_id is not None:
                milestone = await self._milestones.get_for_order(order, milestone_id)
            else:
                milestone = self._delivered_milestone(order)
                if milestone is None:
                    raise InvalidRequestError("No delivered milestone to accept")
            fire_transition(MilestoneStateMachine, milestone.status, "release")

            others_released = all(
                m.status == MilestoneStatus.RELEASED.value
                for m in order.milestones
                if m.id != milestone.id
            )
            event_name = "delivery_accepted" if others_released else "milestone_accepted"
            new_status = fire_transition(OrderStateMachine, old_status, event_name)

            await self._milestones.release(order, milestone, actor=str(actor.id))
            values: dict = {"accepted_at": now}
            if others_released:
                values["completed_at"] = now
            await self._order_repo.update_status(order, old_status, new_status, **values)
            released_amount = milestone.amount

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.DELIVERY_ACCEPTED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={"released_amount": released_amount},
        )

        logger.info(
            "order.accepted",
            order_id=str(order.id),
            status=new_status,
            released_amount=released_amount,
        )
        await notify_safely(
            self._notifier,
            order.seller_id,
            "escrow.released",
            {"order_id": str(order.id), "amount": released_amount},
        )
        return order

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        reason: str | None = None,
    ) -> Order:
        """Cancel an order before any work has started."""
        order = await self._get_order_or_raise(order_id)
        require_party(actor, order, allow_admin=False)
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "cancel")

        await self._order_repo.update_status(
            order,
            old_status,
            new_status,
            cancelled_by=actor.id,
            cancellation_reason=reason,
        )
        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.ORDER_CANCELLED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={"reason": reason},
        )

        logger.info("order.cancelled", order_id=str(order.id), cancelled_by=str(actor.id))
        counterparty = order.seller_id if actor.id == order.buyer_id else order.buyer_id
        await notify_safely(
            self._notifier, counterparty, "order.cancelled", {"order_id": str(order.id)}
        )
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_order(self, actor: Actor, order_id: uuid.UUID) -> Order:
        order = await self._get_order_or_raise(order_id)
        require_party(actor, order)
        return order

    async def list_orders(self, actor: Actor, role: str | None = None) -> list[Order]:
        return await self._order_repo.list_for_user(actor.id, role)

    async def get_events(self, actor: Actor, order_id: uuid.UUID) -> list[OrderEvent]:
        """Get audit trail."""
        await self.get_order(actor, order_id)
        return await self._event_repo.get_by_order(order_id)

    async def get_transactions(self, actor: Actor, order_id: uuid.UUID) -> list[Transaction]:
        await self.get_order(actor, order_id)
        return await self._ledger.list_for_order(order_id)

    async def get_status(self, actor: Actor, order_id: uuid.UUID) -> dict:
        """Get order status with allowed events."""
        order = await self.get_order(actor, order_id)
        sm = OrderStateMachine(current_status=order.status)
        return {
            "order_id": str(order.id),
            "status": order.status,
            "revisions_used": order.revisions_used,
            "revisions_allowed": order.revisions_allowed,
            "allowed_events": sm.get_allowed_events(),
        }

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self._order_repo.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", str(order_id))
        return order

    @staticmethod
    def _delivered_milestone(order: Order) -> Milestone | None:
        for milestone in order.milestones:
            if milestone.status == MilestoneStatus.DELIVERED.value:
                return milestone
        return None
