"""Ledger Service: the only writer of the transactions table.

Every money movement is a Transaction row. Rows start ``pending`` when an
external settlement is expected (gateway payments, milestone funding) or
are written ``completed`` directly for internal escrow moves (releases and
refunds). The single mutation after insert is the one-way CAS
``pending -> completed | failed``.

Balances are derived from completed rows, never stored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import PaymentProvider, TransactionStatus, TransactionType
from marketplace_escrow.domain.exceptions import IllegalTransitionError, LedgerInvariantError
from marketplace_escrow.domain.references import generate_payment_reference
from marketplace_escrow.infrastructure.database.orm_models import Transaction
from marketplace_escrow.infrastructure.database.repositories import TransactionRepository
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.infrastructure.database.orm_models import Milestone, Order

logger = get_logger(__name__)

INFLOW_TYPES = (TransactionType.PAYMENT, TransactionType.ESCROW_FUND)
OUTFLOW_TYPES = (TransactionType.ESCROW_RELEASE, TransactionType.REFUND)

_REFERENCE_PREFIX = {
    TransactionType.PAYMENT: "PAY",
    TransactionType.ESCROW_FUND: "FUND",
    TransactionType.ESCROW_RELEASE: "REL",
    TransactionType.REFUND: "REF",
    TransactionType.PAYOUT: "OUT",
    TransactionType.SUBSCRIPTION: "SUB",
}


class LedgerService:
    """Append-only access to the transaction ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._tx_repo = TransactionRepository(session)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def open_pending(
        self,
        order: Order,
        tx_type: TransactionType,
        amount: int,
        provider: PaymentProvider,
        user_id: uuid.UUID,
        milestone: Milestone | None = None,
        reference: str | None = None,
        metadata: dict | None = None,
    ) -> Transaction:
        """Insert a pending row awaiting an external settlement."""
        tx = Transaction(
            order_id=order.id,
            milestone_id=milestone.id if milestone is not None else None,
            user_id=user_id,
            type=tx_type.value,
            amount=amount,
            currency=order.currency,
            provider=provider.value,
            provider_reference=reference or generate_payment_reference(_REFERENCE_PREFIX[tx_type]),
            status=TransactionStatus.PENDING.value,
            metadata_json=metadata,
        )
        tx = await self._tx_repo.create(tx)
        logger.info(
            "ledger.pending_opened",
            order_id=str(order.id),
            reference=tx.provider_reference,
            type=tx.type,
            amount=amount,
            provider=tx.provider,
        )
        return tx

    async def record_completed(
        self,
        order: Order,
        tx_type: TransactionType,
        amount: int,
        user_id: uuid.UUID,
        milestone: Milestone | None = None,
        metadata: dict | None = None,
    ) -> Transaction:
        """Insert an internal move (release, refund) that is complete on write.

        Raises:
            LedgerInvariantError: On a second release for the same escrow.
        """
        if tx_type == TransactionType.ESCROW_RELEASE:
            await self._guard_single_release(order, milestone)

        now = datetime.now(UTC)
        tx = Transaction(
            order_id=order.id,
            milestone_id=milestone.id if milestone is not None else None,
            user_id=user_id,
            type=tx_type.value,
            amount=amount,
            currency=order.currency,
            provider=PaymentProvider.MANUAL.value,
            provider_reference=generate_payment_reference(_REFERENCE_PREFIX[tx_type]),
            status=TransactionStatus.COMPLETED.value,
            metadata_json=metadata,
            completed_at=now,
        )
        tx = await self._tx_repo.create(tx)
        logger.info(
            "ledger.recorded",
            order_id=str(order.id),
            milestone_id=str(milestone.id) if milestone is not None else None,
            type=tx.type,
            amount=amount,
            reference=tx.provider_reference,
        )
        return tx

    async def complete(
        self,
        tx: Transaction,
        provider_transaction_id: str | None = None,
        provider_status: str | None = None,
    ) -> Transaction:
        """CAS pending -> completed. Raises IllegalTransitionError if already settled."""
        return await self._tx_repo.update_status(
            tx,
            TransactionStatus.PENDING.value,
            TransactionStatus.COMPLETED.value,
            provider_transaction_id=provider_transaction_id,
            provider_status=provider_status,
            completed_at=datetime.now(UTC),
        )

    async def fail(
        self,
        tx: Transaction,
        message: str,
        provider_status: str | None = None,
    ) -> Transaction:
        """CAS pending -> failed. Raises IllegalTransitionError if already settled."""
        return await self._tx_repo.update_status(
            tx,
            TransactionStatus.PENDING.value,
            TransactionStatus.FAILED.value,
            error_message=message,
            provider_status=provider_status,
        )

    async def expire_stale_pending(self, older_than: datetime) -> list[Transaction]:
        """Fail pending rows created before ``older_than``. Completed rows are untouched."""
        expired: list[Transaction] = []
        for tx in await self._tx_repo.list_stale_pending(older_than):
            try:
                await self.fail(tx, "Expired: no settlement received")
            except IllegalTransitionError:
                # Settled concurrently; the settlement wins.
                continue
            expired.append(tx)

        logger.info("ledger.pending_expired", count=len(expired), older_than=older_than.isoformat())
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_reference(
        self,
        provider: PaymentProvider | None,
        reference: str,
    ) -> Transaction | None:
        if provider is None:
            return await self._tx_repo.find_by_reference(reference)
        return await self._tx_repo.get_by_reference(provider, reference)

    async def list_for_order(self, order_id: uuid.UUID) -> list[Transaction]:
        return await self._tx_repo.list_by_order(order_id)

    async def has_completed_payment(self, order: Order) -> bool:
        """True if a completed payment for exactly the order total exists."""
        return await self._tx_repo.has_completed(
            order.id, TransactionType.PAYMENT, order.total_amount
        )

    async def has_completed_funding(self, milestone: Milestone) -> bool:
        """True if a completed escrow_fund for exactly the milestone amount exists."""
        return await self._tx_repo.has_completed(
            milestone.order_id,
            TransactionType.ESCROW_FUND,
            milestone.amount,
            milestone_id=milestone.id,
        )

    async def has_pending_funding(self, milestone: Milestone) -> bool:
        return await self._tx_repo.has_pending(milestone.id, TransactionType.ESCROW_FUND)

    async def escrow_balance(self, order: Order) -> int:
        """Money held for the order: completed inflows minus completed outflows."""
        inflow = await self._tx_repo.sum_completed(order.id, INFLOW_TYPES)
        outflow = await self._tx_repo.sum_completed(order.id, OUTFLOW_TYPES)
        return inflow - outflow

    async def milestone_balance(self, milestone: Milestone) -> int:
        """Money held for one milestone."""
        inflow = await self._tx_repo.sum_completed(
            milestone.order_id, INFLOW_TYPES, milestone_id=milestone.id
        )
        outflow = await self._tx_repo.sum_completed(
            milestone.order_id, OUTFLOW_TYPES, milestone_id=milestone.id
        )
        return inflow - outflow

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _guard_single_release(self, order: Order, milestone: Milestone | None) -> None:
        if milestone is not None:
            if await self._tx_repo.count_releases(milestone.id) > 0:
                logger.error(
                    "ledger.double_release",
                    order_id=str(order.id),
                    milestone_id=str(milestone.id),
                )
                raise LedgerInvariantError(f"Milestone {milestone.id} was already released")
            return

        released = await self._tx_repo.sum_completed(order.id, (TransactionType.ESCROW_RELEASE,))
        if released > 0:
            logger.error("ledger.double_release", order_id=str(order.id))
            raise LedgerInvariantError(f"Order {order.id} was already released")
