"""Dispute Service: freezes escrow and reallocates it on resolution.

Opening a dispute freezes the whole order: the order moves to disputed
and every funded milestone is frozen with it. An admin then reviews,
escalates, closes (no money moves) or resolves it exactly once.

Resolution money policy (E = amount currently held in escrow):
    refund_full     refund E to the buyer                     -> refunded
    refund_partial  refund X (0 < X < E), release E - X        -> refunded
    release_funds   release to the seller (service orders
                    release seller_earnings, fees retained)   -> completed
    no_action/other no ledger write, work resumes             -> in_progress

For project orders E is the sum of the frozen milestones' balances and a
partial refund is allocated across them in milestone order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.domain.collaborators import LoggingNotifier, notify_safely
from marketplace_escrow.domain.enums import (
    DisputeCategory,
    DisputeResolution,
    DisputeStatus,
    EventType,
    MilestoneStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import (
    AlreadyResolvedError,
    IllegalTransitionError,
    InvalidAmountError,
    InvalidRequestError,
    NotFoundError,
    UnauthorizedError,
)
from marketplace_escrow.domain.state_machine import (
    DisputeStateMachine,
    MilestoneStateMachine,
    OrderStateMachine,
)
from marketplace_escrow.infrastructure.database.orm_models import Dispute
from marketplace_escrow.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.guards import fire_transition, require_admin, require_party
from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.milestone_service import MilestoneService

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.collaborators import Actor, Notifier
    from marketplace_escrow.infrastructure.database.orm_models import Milestone, Order

logger = get_logger(__name__)

_FREEZABLE = frozenset({MilestoneStatus.FUNDED.value, MilestoneStatus.IN_PROGRESS.value})

_ORDER_EVENT = {
    DisputeResolution.REFUND_FULL: ("resolved_refund", EventType.DISPUTE_RESOLVED_REFUND),
    DisputeResolution.REFUND_PARTIAL: ("resolved_refund", EventType.DISPUTE_RESOLVED_REFUND),
    DisputeResolution.RELEASE_FUNDS: ("resolved_release", EventType.DISPUTE_RESOLVED_RELEASE),
    DisputeResolution.NO_ACTION: ("resolved_resume", EventType.DISPUTE_RESOLVED_RESUME),
    DisputeResolution.OTHER: ("resolved_resume", EventType.DISPUTE_RESOLVED_RESUME),
}


@dataclass(frozen=True)
class _Allocation:
    """Money to move for one escrow (the whole service order, or one milestone)."""

    milestone: Milestone | None
    refund: int
    release: int

    @property
    def milestone_event(self) -> str:
        return "resolved_release" if self.release > 0 else "resolved_refund"


class DisputeService:
    """Manages the dispute lifecycle and its effect on escrowed funds."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: Notifier | None = None,
    ) -> None:
        self._session = session
        self._notifier = notifier or LoggingNotifier()
        self._dispute_repo = DisputeRepository(session)
        self._order_repo = OrderRepository(session)
        self._event_repo = EventRepository(session)
        self._ledger = LedgerService(session)
        self._milestones = MilestoneService(session)

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        category: str,
        title: str,
        description: str,
        evidence: list[str] | None = None,
    ) -> Dispute:
        """A party disputes an in-progress order; its escrow is frozen."""
        order = await self._get_order_or_raise(order_id)
        require_party(actor, order, allow_admin=False)
        try:
            category_value = DisputeCategory(category).value
        except ValueError as err:
            raise InvalidRequestError(f"Unknown dispute category: {category}") from err

        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "dispute_opened")
        to_freeze = [m for m in order.milestones if m.status in _FREEZABLE]

        against = order.seller_id if actor.id == order.buyer_id else order.buyer_id
        dispute = await self._dispute_repo.create(
            Dispute(
                order_id=order.id,
                raised_by_id=actor.id,
                against_id=against,
                category=category_value,
                title=title,
                description=description,
                evidence=evidence,
                status=DisputeStatus.OPEN.value,
            )
        )
        await self._order_repo.update_status(order, old_status, new_status)
        for milestone in to_freeze:
            await self._milestones.transition(milestone, "dispute_frozen")

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.DISPUTE_OPENED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={
                "dispute_id": str(dispute.id),
                "category": category_value,
                "frozen_milestones": [str(m.id) for m in to_freeze],
            },
        )

        logger.info(
            "dispute.opened",
            dispute_id=str(dispute.id),
            order_id=str(order.id),
            category=category_value,
        )
        await notify_safely(
            self._notifier, against, "dispute.opened", {"dispute_id": str(dispute.id)}
        )
        return dispute

    # ------------------------------------------------------------------
    # Review workflow (admin)
    # ------------------------------------------------------------------

    async def start_review(self, actor: Actor, dispute_id: uuid.UUID) -> Dispute:
        require_admin(actor)
        dispute = await self._get_dispute_or_raise(dispute_id)
        await self._transition_dispute(dispute, "start_review", assigned_to=actor.id)
        logger.info("dispute.under_review", dispute_id=str(dispute.id), admin=str(actor.id))
        return dispute

    async def escalate(self, actor: Actor, dispute_id: uuid.UUID) -> Dispute:
        require_admin(actor)
        dispute = await self._get_dispute_or_raise(dispute_id)
        await self._transition_dispute(dispute, "escalate")
        logger.info("dispute.escalated", dispute_id=str(dispute.id), admin=str(actor.id))
        return dispute

    async def close(
        self,
        actor: Actor,
        dispute_id: uuid.UUID,
        notes: str | None = None,
    ) -> Dispute:
        """Close without a ruling: work resumes, no money moves."""
        require_admin(actor)
        dispute = await self._get_dispute_or_raise(dispute_id)
        order = await self._get_order_or_raise(dispute.order_id)

        fire_transition(DisputeStateMachine, dispute.status, "close")
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, "resolved_resume")
        frozen = self._frozen_milestones(order)
        for milestone in frozen:
            fire_transition(MilestoneStateMachine, milestone.status, "resolved_resume")

        await self._transition_dispute(dispute, "close", resolution_notes=notes)
        await self._order_repo.update_status(order, old_status, new_status)
        for milestone in frozen:
            await self._milestones.transition(milestone, "resolved_resume")

        await self._event_repo.record(
            order_id=order.id,
            event_type=EventType.DISPUTE_CLOSED,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={"dispute_id": str(dispute.id)},
        )

        logger.info("dispute.closed", dispute_id=str(dispute.id), order_id=str(order.id))
        await self._notify_parties(dispute, "dispute.closed")
        return dispute

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        actor: Actor,
        dispute_id: uuid.UUID,
        resolution: str,
        notes: str | None = None,
        amount: int | None = None,
    ) -> Dispute:
        """Rule on a dispute (exactly once) and move the escrowed money."""
        require_admin(actor)
        dispute = await self._get_dispute_or_raise(dispute_id)
        if dispute.status == DisputeStatus.RESOLVED.value:
            raise AlreadyResolvedError(str(dispute.id))
        try:
            ruling = DisputeResolution(resolution)
        except ValueError as err:
            raise InvalidRequestError(f"Unknown resolution: {resolution}") from err

        order = await self._get_order_or_raise(dispute.order_id)
        fire_transition(DisputeStateMachine, dispute.status, "resolve")
        order_event, event_type = _ORDER_EVENT[ruling]
        old_status = order.status
        new_status = fire_transition(OrderStateMachine, old_status, order_event)

        frozen = self._frozen_milestones(order)
        allocations = await self._plan(order, frozen, ruling, amount)
        if ruling in (DisputeResolution.NO_ACTION, DisputeResolution.OTHER):
            milestone_events = [(m, "resolved_resume") for m in frozen]
        else:
            milestone_events = [
                (a.milestone, a.milestone_event) for a in allocations if a.milestone is not None
            ]
        for milestone, event_name in milestone_events:
            fire_transition(MilestoneStateMachine, milestone.status, event_name)

        refunded = sum(a.refund for a in allocations)
        released = sum(a.release for a in allocations)

        # The dispute row is claimed first so a concurrent resolve writes nothing
        try:
            await self._transition_dispute(
                dispute,
                "resolve",
                resolution=ruling.value,
                resolution_notes=notes,
                resolution_amount=refunded if refunded else None,
                resolved_by=actor.id,
                resolved_at=datetime.now(UTC),
            )
        except IllegalTransitionError as err:
            if err.current_state == DisputeStatus.RESOLVED.value:
                raise AlreadyResolvedError(str(dispute.id)) from err
            raise

        for allocation in allocations:
            await self._move_money(order, allocation)
        for milestone, event_name in milestone_events:
            values = {"released_at": datetime.now(UTC)} if event_name == "resolved_release" else {}
            await self._milestones.transition(milestone, event_name, **values)

        order_values: dict = {}
        if new_status == "completed":
            order_values["completed_at"] = datetime.now(UTC)
        await self._order_repo.update_status(order, old_status, new_status, **order_values)

        await self._event_repo.record(
            order_id=order.id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            actor=str(actor.id),
            metadata={
                "dispute_id": str(dispute.id),
                "resolution": ruling.value,
                "refunded": refunded,
                "released": released,
            },
        )

        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute.id),
            order_id=str(order.id),
            resolution=ruling.value,
            refunded=refunded,
            released=released,
            order_status=new_status,
        )
        await self._notify_parties(dispute, "dispute.resolved")
        return dispute

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_dispute(self, actor: Actor, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self._get_dispute_or_raise(dispute_id)
        if not actor.is_admin and actor.id not in (dispute.raised_by_id, dispute.against_id):
            raise UnauthorizedError("Not a party to this dispute")
        return dispute

    async def list_disputes(self, actor: Actor, status: str | None = None) -> list[Dispute]:
        if status is not None:
            try:
                status = DisputeStatus(status).value
            except ValueError as err:
                raise InvalidRequestError(f"Unknown dispute status: {status}") from err
        user_id = None if actor.is_admin else actor.id
        return await self._dispute_repo.list_filtered(status=status, user_id=user_id)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _plan(
        self,
        order: Order,
        frozen: list[Milestone],
        ruling: DisputeResolution,
        amount: int | None,
    ) -> list[_Allocation]:
        """Work out every ledger move before any is written."""
        if ruling in (DisputeResolution.NO_ACTION, DisputeResolution.OTHER):
            return []

        if order.is_project:
            held = [(m, await self._ledger.milestone_balance(m)) for m in frozen]
        else:
            held = [(None, await self._ledger.escrow_balance(order))]
        escrowed = sum(balance for _, balance in held)

        if ruling == DisputeResolution.REFUND_FULL:
            return [_Allocation(m, refund=balance, release=0) for m, balance in held]

        if ruling == DisputeResolution.RELEASE_FUNDS:
            if not order.is_project:
                return [_Allocation(None, refund=0, release=order.seller_earnings)]
            return [_Allocation(m, refund=0, release=balance) for m, balance in held]

        # refund_partial
        if amount is None or isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmountError("A partial refund needs an integer amount")
        if not 0 < amount < escrowed:
            raise InvalidAmountError(
                f"Partial refund must be between 0 and {escrowed} (exclusive), got {amount}"
            )
        allocations: list[_Allocation] = []
        remaining = amount
        for milestone, balance in held:
            refund = min(remaining, balance)
            remaining -= refund
            allocations.append(_Allocation(milestone, refund=refund, release=balance - refund))
        return allocations

    async def _move_money(self, order: Order, allocation: _Allocation) -> None:
        if allocation.refund > 0:
            await self._ledger.record_completed(
                order,
                TransactionType.REFUND,
                allocation.refund,
                user_id=order.buyer_id,
                milestone=allocation.milestone,
                metadata={"reason": "dispute"},
            )
        if allocation.release > 0:
            await self._ledger.record_completed(
                order,
                TransactionType.ESCROW_RELEASE,
                allocation.release,
                user_id=order.seller_id,
                milestone=allocation.milestone,
                metadata={"reason": "dispute"},
            )

    async def _transition_dispute(self, dispute: Dispute, event_name: str, **values: object) -> None:
        old_status = dispute.status
        new_status = fire_transition(DisputeStateMachine, old_status, event_name)
        await self._dispute_repo.update_status(dispute, old_status, new_status, **values)

    @staticmethod
    def _frozen_milestones(order: Order) -> list[Milestone]:
        return [m for m in order.milestones if m.status == MilestoneStatus.DISPUTED.value]

    async def _notify_parties(self, dispute: Dispute, event_kind: str) -> None:
        payload = {"dispute_id": str(dispute.id), "order_id": str(dispute.order_id)}
        for user_id in (dispute.raised_by_id, dispute.against_id):
            await notify_safely(self._notifier, user_id, event_kind, payload)

    async def _get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self._order_repo.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", str(order_id))
        return order

    async def _get_dispute_or_raise(self, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self._dispute_repo.get_by_id(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", str(dispute_id))
        return dispute
