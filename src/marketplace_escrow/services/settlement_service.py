"""Settlement Reconciler: applies verified provider notifications.

Steps for one notification:
    1. Find the pending ledger row by (provider, reference).
    2. Settled rows are left alone (replays return ALREADY_PROCESSED).
    3. Success: amount must match the row exactly, then CAS
       pending -> completed and apply the domain effect
       (payment -> order paid, escrow_fund -> milestone funded).
       Money for an order or milestone that is already paid is kept and
       flagged as orphaned.
    4. Failure / cancellation: CAS pending -> failed; the order stays payable.
    5. Provider "pending": no-op, a later notification will settle it.

The CAS on the transaction row is the idempotency gate: of two concurrent
deliveries of the same webhook, exactly one wins and applies the effect.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.domain.collaborators import LoggingNotifier, notify_safely
from marketplace_escrow.domain.enums import (
    EventType,
    MilestoneStatus,
    OrderStatus,
    PaymentOutcome,
    SettlementOutcome,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import IllegalTransitionError, UnknownTransactionError
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    MilestoneRepository,
    OrderRepository,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.order_service import OrderService

if TYPE_CHECKING:
    import structlog
    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.collaborators import Notifier
    from marketplace_escrow.domain.enums import PaymentProvider
    from marketplace_escrow.gateways.base import WebhookEvent
    from marketplace_escrow.infrastructure.database.orm_models import Order, Transaction

logger = get_logger(__name__)

# Orders in these states can no longer take money in
_CLOSED_ORDER_STATUSES = frozenset(
    {
        OrderStatus.CANCELLED.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.REFUNDED.value,
    }
)


@dataclass(frozen=True)
class SettlementResult:
    """What reconcile() did with a notification."""

    outcome: SettlementOutcome
    transaction: Transaction
    order_status: str | None = None
    message: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == SettlementOutcome.APPLIED


class SettlementReconciler:
    """Turns verified webhook events into ledger and order state."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._session = session
        self._notifier = notifier or LoggingNotifier()
        self._ledger = LedgerService(session)
        self._order_repo = OrderRepository(session)
        self._event_repo = EventRepository(session)
        self._milestone_repo = MilestoneRepository(session)
        self._orders = OrderService(session, settings=settings, notifier=self._notifier)
        self._milestones = MilestoneService(session)

    async def reconcile(self, provider: PaymentProvider, event: WebhookEvent) -> SettlementResult:
        """Apply one verified notification. Safe to call any number of times.

        Raises:
            UnknownTransactionError: If no ledger row carries the reference.
        """
        log = logger.bind(
            provider=provider.value,
            reference=event.reference,
            outcome=event.outcome.value,
        )

        tx = await self._ledger.find_by_reference(provider, event.reference)
        if tx is None:
            log.warning("settlement.unknown_reference")
            raise UnknownTransactionError(provider.value, event.reference)

        if tx.status != TransactionStatus.PENDING.value:
            if tx.status == TransactionStatus.FAILED.value and event.outcome == PaymentOutcome.SUCCESS:
                # Money arrived after we gave up on it; needs a human.
                log.error(
                    "settlement.success_after_failure",
                    transaction_id=str(tx.id),
                    error_message=tx.error_message,
                )
            else:
                log.info("settlement.already_processed", status=tx.status)
            return SettlementResult(SettlementOutcome.ALREADY_PROCESSED, tx)

        if event.outcome == PaymentOutcome.PENDING:
            log.info("settlement.still_pending")
            return SettlementResult(SettlementOutcome.IGNORED_PENDING, tx)

        if event.outcome in (PaymentOutcome.FAILED, PaymentOutcome.CANCELLED):
            return await self._mark_failed(tx, event, log)

        if event.amount != tx.amount:
            message = f"Amount mismatch: expected {tx.amount}, received {event.amount}"
            log.error("settlement.amount_mismatch", expected=tx.amount, received=event.amount)
            try:
                await self._ledger.fail(tx, message, provider_status=event.outcome.value)
            except IllegalTransitionError:
                return SettlementResult(SettlementOutcome.ALREADY_PROCESSED, tx)
            return SettlementResult(SettlementOutcome.AMOUNT_MISMATCH, tx, message=message)

        try:
            await self._ledger.complete(
                tx,
                provider_transaction_id=event.provider_transaction_id or None,
                provider_status=event.outcome.value,
            )
        except IllegalTransitionError:
            log.info("settlement.lost_race")
            return SettlementResult(SettlementOutcome.ALREADY_PROCESSED, tx)

        return await self._apply_effect(tx, log)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _mark_failed(
        self,
        tx: Transaction,
        event: WebhookEvent,
        log: structlog.stdlib.BoundLogger,
    ) -> SettlementResult:
        message = event.message or f"Payment {event.outcome.value}"
        try:
            await self._ledger.fail(tx, message, provider_status=event.outcome.value)
        except IllegalTransitionError:
            return SettlementResult(SettlementOutcome.ALREADY_PROCESSED, tx)

        log.info("settlement.marked_failed", error_message=message)
        await notify_safely(
            self._notifier,
            tx.user_id,
            "payment.failed",
            {"order_id": str(tx.order_id), "reference": tx.provider_reference},
        )
        return SettlementResult(SettlementOutcome.MARKED_FAILED, tx, message=message)

    async def _apply_effect(
        self,
        tx: Transaction,
        log: structlog.stdlib.BoundLogger,
    ) -> SettlementResult:
        order = await self._order_repo.get_by_id(tx.order_id)
        if order is None or order.status in _CLOSED_ORDER_STATUSES:
            return await self._orphan(tx, order, log)

        if tx.type == TransactionType.PAYMENT.value:
            if order.status != OrderStatus.PENDING_PAYMENT.value:
                # A second payment for an order that is already paid
                return await self._orphan(tx, order, log)
            await self._orders.mark_paid(order.id)
        elif tx.type == TransactionType.ESCROW_FUND.value:
            milestone = (
                await self._milestone_repo.get_by_id(tx.milestone_id) if tx.milestone_id else None
            )
            if milestone is not None and milestone.status != MilestoneStatus.PENDING.value:
                # Another row already funded this milestone
                return await self._orphan(tx, order, log)
            await self._milestones.apply_funding(tx)
        else:
            log.error("settlement.unexpected_type", type=tx.type)
            return await self._orphan(tx, order, log)

        log.info(
            "settlement.applied",
            transaction_id=str(tx.id),
            order_id=str(order.id),
            order_status=order.status,
        )
        return SettlementResult(SettlementOutcome.APPLIED, tx, order_status=order.status)

    async def _orphan(
        self,
        tx: Transaction,
        order: Order | None,
        log: structlog.stdlib.BoundLogger,
    ) -> SettlementResult:
        """Completed money with nowhere to go: keep it in the ledger and flag it."""
        order_status = order.status if order is not None else None
        log.error(
            "settlement.orphaned_payment",
            transaction_id=str(tx.id),
            order_id=str(tx.order_id),
            order_status=order_status,
            amount=tx.amount,
        )
        if order is not None:
            await self._event_repo.record(
                order_id=order.id,
                event_type=EventType.PAYMENT_ORPHANED,
                old_status=order.status,
                new_status=order.status,
                metadata={"reference": tx.provider_reference, "amount": tx.amount},
            )
        return SettlementResult(
            SettlementOutcome.ORPHANED,
            tx,
            order_status=order_status,
            message="Payment received for an order that cannot accept it",
        )
