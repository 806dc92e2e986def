"""Payment Service: starts payments and settles them outside webhooks.

Initiation writes a pending ledger row *before* the buyer is redirected,
so every notification the provider sends back has a row to land on.

Supported providers:
    - gatewayA / gatewayB: signed redirect built by the gateway adapter
    - manual: demo/back-office path, settled with settle_manually() and
      only available when manual_settlement_enabled is set
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.collaborators import LoggingNotifier
from marketplace_escrow.domain.enums import (
    MilestoneStatus,
    OrderStatus,
    PaymentOutcome,
    PaymentProvider,
    SettlementOutcome,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import (
    GatewayError,
    GatewayNotConfiguredError,
    IllegalTransitionError,
    InvalidAmountError,
    InvalidRequestError,
    NotFoundError,
    PaymentError,
    UnknownTransactionError,
)
from marketplace_escrow.domain.references import generate_payment_reference
from marketplace_escrow.gateways import GatewayRegistry
from marketplace_escrow.gateways.base import PaymentRequest, WebhookEvent
from marketplace_escrow.infrastructure.database.repositories import OrderRepository
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.services.guards import require_buyer, require_party
from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.settlement_service import SettlementReconciler, SettlementResult

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.collaborators import Actor, Notifier
    from marketplace_escrow.gateways.base import PaymentGateway, PaymentRedirect
    from marketplace_escrow.infrastructure.database.orm_models import (
        Milestone,
        Order,
        Transaction,
    )

    GatewayFactory = Callable[[PaymentProvider], PaymentGateway]

logger = get_logger(__name__)

# A milestone cannot be funded once the order has reached one of these
_UNFUNDABLE_ORDER_STATUSES = frozenset(
    {
        OrderStatus.CANCELLED.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.REFUNDED.value,
        OrderStatus.DISPUTED.value,
    }
)


@dataclass(frozen=True)
class PaymentInitiation:
    """Outcome of initiate_payment.

    ``redirect`` is None for manual payments, and when building the
    redirect failed (the ledger row is then already marked failed).
    """

    transaction: Transaction
    redirect: PaymentRedirect | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class PaymentService:
    """Payment initiation, manual settlement and pending-row maintenance."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        gateway_factory: GatewayFactory | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._gateway_factory = gateway_factory or (
            lambda provider: GatewayRegistry.create(provider, self._settings)
        )
        self._notifier = notifier or LoggingNotifier()
        self._order_repo = OrderRepository(session)
        self._ledger = LedgerService(session)
        self._milestones = MilestoneService(session)
        self._reconciler = SettlementReconciler(
            session, settings=self._settings, notifier=self._notifier
        )

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        actor: Actor,
        order_id: uuid.UUID,
        provider: PaymentProvider | str,
        milestone_id: uuid.UUID | None = None,
        buyer_email: str | None = None,
        buyer_name: str | None = None,
    ) -> PaymentInitiation:
        """Open a pending ledger row and build the provider redirect.

        Full-order payments charge total_amount; milestone funding charges
        the milestone amount. All checks run before the row is written.
        """
        try:
            provider = PaymentProvider(provider)
        except ValueError as err:
            raise InvalidRequestError(f"Unknown payment provider: {provider}") from err

        order = await self._get_order_or_raise(order_id)
        require_buyer(actor, order)

        milestone: Milestone | None = None
        if milestone_id is None:
            if order.is_project:
                raise InvalidRequestError("Project orders are funded one milestone at a time")
            if order.status != OrderStatus.PENDING_PAYMENT.value:
                raise IllegalTransitionError(order.status, OrderStatus.PENDING_REQUIREMENTS.value)
            tx_type, amount = TransactionType.PAYMENT, order.total_amount
        else:
            if not order.is_project:
                raise InvalidRequestError("Only project orders have milestones")
            milestone = await self._milestones.get_for_order(order, milestone_id)
            if order.status in _UNFUNDABLE_ORDER_STATUSES:
                raise IllegalTransitionError(order.status, MilestoneStatus.FUNDED.value)
            if milestone.status != MilestoneStatus.PENDING.value:
                raise IllegalTransitionError(milestone.status, MilestoneStatus.FUNDED.value)
            if await self._ledger.has_pending_funding(milestone):
                raise InvalidRequestError("A payment for this milestone is already in progress")
            tx_type, amount = TransactionType.ESCROW_FUND, milestone.amount

        self._check_amount_limits(amount)

        gateway: PaymentGateway | None = None
        if provider == PaymentProvider.MANUAL:
            if not self._settings.manual_settlement_enabled:
                raise GatewayNotConfiguredError(provider.value)
        else:
            gateway = self._gateway_factory(provider)
            if not gateway.is_configured:
                raise GatewayNotConfiguredError(provider.value)

        email = buyer_email or actor.email
        if gateway is not None and not email:
            raise InvalidRequestError("A buyer email is required for gateway payments")

        reference = generate_payment_reference()
        tx = await self._ledger.open_pending(
            order,
            tx_type,
            amount,
            provider,
            user_id=actor.id,
            milestone=milestone,
            reference=reference,
        )

        if gateway is None:
            logger.info("payment.initiated", reference=reference, provider=provider.value, amount=amount)
            return PaymentInitiation(transaction=tx)

        description = order.title or order.order_number
        if milestone is not None:
            description = f"{description}: {milestone.title}"
        request = PaymentRequest(
            order_id=str(order.id),
            amount=amount,
            description=description,
            reference=reference,
            buyer_email=email,
            milestone_id=str(milestone.id) if milestone is not None else None,
            buyer_name=buyer_name or actor.name,
        )
        try:
            redirect = gateway.build_payment(request)
        except (PaymentError, ValueError) as exc:
            logger.error(
                "payment.redirect_failed",
                reference=reference,
                provider=provider.value,
                error=str(exc),
            )
            await self._ledger.fail(tx, f"Could not build payment redirect: {exc}")
            return PaymentInitiation(transaction=tx, error="Payment could not be processed")

        logger.info(
            "payment.initiated",
            order_id=str(order.id),
            milestone_id=str(milestone.id) if milestone is not None else None,
            reference=reference,
            provider=provider.value,
            amount=amount,
        )
        return PaymentInitiation(transaction=tx, redirect=redirect)

    # ------------------------------------------------------------------
    # Settlement outside the webhook path
    # ------------------------------------------------------------------

    async def settle_manually(
        self,
        actor: Actor,
        reference: str,
        outcome: PaymentOutcome = PaymentOutcome.SUCCESS,
        amount: int | None = None,
    ) -> SettlementResult:
        """Settle a manual pending row through the reconciler (demo/back office)."""
        if not self._settings.manual_settlement_enabled:
            raise GatewayNotConfiguredError(PaymentProvider.MANUAL.value)

        tx = await self._ledger.find_by_reference(PaymentProvider.MANUAL, reference)
        if tx is None:
            raise UnknownTransactionError(PaymentProvider.MANUAL.value, reference)
        order = await self._get_order_or_raise(tx.order_id)
        if not actor.is_admin:
            require_buyer(actor, order)

        event = WebhookEvent(
            provider=PaymentProvider.MANUAL,
            reference=reference,
            provider_transaction_id=f"MANUAL-{reference}",
            amount=tx.amount if amount is None else amount,
            outcome=PaymentOutcome(outcome),
            message="Manual settlement",
            order_id=str(order.id),
            milestone_id=str(tx.milestone_id) if tx.milestone_id else None,
        )
        logger.info("payment.manual_settlement", reference=reference, actor=str(actor.id))
        return await self._reconciler.reconcile(PaymentProvider.MANUAL, event)

    async def refresh_pending(self, actor: Actor, reference: str) -> SettlementResult:
        """Ask the provider for a pending row's status and reconcile the answer."""
        tx = await self._get_transaction_for(actor, reference)
        if tx.status != TransactionStatus.PENDING.value:
            return SettlementResult(SettlementOutcome.ALREADY_PROCESSED, tx)

        provider = PaymentProvider(tx.provider)
        gateway = self._gateway_factory(provider) if provider != PaymentProvider.MANUAL else None
        query_status = getattr(gateway, "query_status", None)
        if query_status is None:
            raise InvalidRequestError(f"Status queries are not supported for {provider.value}")

        event = await query_status(reference)
        if event.reference != reference:
            raise GatewayError(provider.value, "status response for a different reference")
        return await self._reconciler.reconcile(provider, event)

    async def get_payment_status(self, actor: Actor, reference: str) -> Transaction:
        return await self._get_transaction_for(actor, reference)

    async def expire_stale_pending(self, now: datetime | None = None) -> list[Transaction]:
        """Fail pending rows older than pending_transaction_ttl_minutes."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(minutes=self._settings.pending_transaction_ttl_minutes)
        return await self._ledger.expire_stale_pending(cutoff)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _check_amount_limits(self, amount: int) -> None:
        if amount < self._settings.payment_min_amount:
            raise InvalidAmountError(
                f"Amount {amount} is below the minimum of {self._settings.payment_min_amount}"
            )
        if amount > self._settings.payment_max_amount:
            raise InvalidAmountError(
                f"Amount {amount} exceeds the maximum of {self._settings.payment_max_amount}"
            )

    async def _get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self._order_repo.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", str(order_id))
        return order

    async def _get_transaction_for(self, actor: Actor, reference: str) -> Transaction:
        tx = await self._ledger.find_by_reference(None, reference)
        if tx is None:
            raise NotFoundError("Transaction", reference)
        order = await self._get_order_or_raise(tx.order_id)
        require_party(actor, order)
        return tx
