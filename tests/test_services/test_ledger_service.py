"""Tests for the append-only ledger and its derived balances."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import make_project_order, make_service_order, pay_manually

from marketplace_escrow.domain.enums import (
    PaymentProvider,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import IllegalTransitionError, LedgerInvariantError
from marketplace_escrow.services import LedgerService


class TestPendingRows:
    @pytest.mark.asyncio
    async def test_open_pending(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        ledger = LedgerService(session)

        tx = await ledger.open_pending(
            order, TransactionType.PAYMENT, 51500, PaymentProvider.GATEWAY_A, user_id=buyer.id
        )

        assert tx.status == TransactionStatus.PENDING
        assert tx.provider_reference.startswith("PAY-")
        assert tx.currency == "ZAR"
        assert await ledger.find_by_reference(PaymentProvider.GATEWAY_A, tx.provider_reference) is tx
        assert await ledger.find_by_reference(None, tx.provider_reference) is tx
        assert await ledger.find_by_reference(PaymentProvider.GATEWAY_B, tx.provider_reference) is None

    @pytest.mark.asyncio
    async def test_payout_rows_are_storable(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)

        tx = await LedgerService(session).open_pending(
            order, TransactionType.PAYOUT, 46000, PaymentProvider.MANUAL, user_id=seller.id
        )

        assert tx.type == "payout"
        assert tx.provider_reference.startswith("OUT-")

    @pytest.mark.asyncio
    async def test_pending_rows_do_not_count(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        ledger = LedgerService(session)
        await ledger.open_pending(
            order, TransactionType.PAYMENT, 51500, PaymentProvider.MANUAL, user_id=buyer.id
        )
        assert await ledger.escrow_balance(order) == 0
        assert not await ledger.has_completed_payment(order)

    @pytest.mark.asyncio
    async def test_settlement_is_one_way(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        ledger = LedgerService(session)
        tx = await ledger.open_pending(
            order, TransactionType.PAYMENT, 51500, PaymentProvider.MANUAL, user_id=buyer.id
        )

        await ledger.complete(tx, provider_transaction_id="p-1")
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.completed_at is not None

        with pytest.raises(IllegalTransitionError):
            await ledger.complete(tx)
        with pytest.raises(IllegalTransitionError):
            await ledger.fail(tx, "too late")
        assert tx.status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_expire_leaves_completed_rows(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        ledger = LedgerService(session)
        stale = await ledger.open_pending(
            order, TransactionType.PAYMENT, 51500, PaymentProvider.MANUAL, user_id=buyer.id
        )
        done = await ledger.open_pending(
            order, TransactionType.PAYMENT, 51500, PaymentProvider.MANUAL, user_id=buyer.id
        )
        await ledger.complete(done)

        expired = await ledger.expire_stale_pending(datetime.now(UTC) + timedelta(minutes=1))

        assert [tx.id for tx in expired] == [stale.id]
        assert stale.status == TransactionStatus.FAILED
        assert stale.error_message.startswith("Expired")
        assert done.status == TransactionStatus.COMPLETED


class TestBalances:
    @pytest.mark.asyncio
    async def test_escrow_balance_after_payment(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        await pay_manually(session, settings, buyer, order.id)
        ledger = LedgerService(session)

        assert await ledger.has_completed_payment(order)
        assert await ledger.escrow_balance(order) == 51500

        await ledger.record_completed(order, TransactionType.REFUND, 1500, user_id=buyer.id)
        assert await ledger.escrow_balance(order) == 50000

    @pytest.mark.asyncio
    async def test_milestone_balance(self, session, settings, buyer, seller) -> None:
        order = await make_project_order(session, settings, buyer, seller)
        first, second = order.milestones
        await pay_manually(session, settings, buyer, order.id, milestone_id=first.id)
        ledger = LedgerService(session)

        assert await ledger.has_completed_funding(first)
        assert not await ledger.has_completed_funding(second)
        assert await ledger.milestone_balance(first) == 100000
        assert await ledger.milestone_balance(second) == 0
        assert await ledger.escrow_balance(order) == 100000


class TestReleaseGuard:
    @pytest.mark.asyncio
    async def test_order_released_once(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        await pay_manually(session, settings, buyer, order.id)
        ledger = LedgerService(session)

        await ledger.record_completed(
            order, TransactionType.ESCROW_RELEASE, order.seller_earnings, user_id=seller.id
        )
        with pytest.raises(LedgerInvariantError):
            await ledger.record_completed(
                order, TransactionType.ESCROW_RELEASE, order.seller_earnings, user_id=seller.id
            )

    @pytest.mark.asyncio
    async def test_milestone_released_once(self, session, settings, buyer, seller) -> None:
        order = await make_project_order(session, settings, buyer, seller)
        first, second = order.milestones
        ledger = LedgerService(session)

        await ledger.record_completed(
            order, TransactionType.ESCROW_RELEASE, first.amount, user_id=seller.id, milestone=first
        )
        with pytest.raises(LedgerInvariantError):
            await ledger.record_completed(
                order,
                TransactionType.ESCROW_RELEASE,
                first.amount,
                user_id=seller.id,
                milestone=first,
            )
        # Other milestones are independent escrows
        await ledger.record_completed(
            order, TransactionType.ESCROW_RELEASE, second.amount, user_id=seller.id, milestone=second
        )

    @pytest.mark.asyncio
    async def test_internal_moves_are_complete_on_write(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await LedgerService(session).record_completed(
            order, TransactionType.REFUND, 1000, user_id=buyer.id
        )
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.provider == PaymentProvider.MANUAL
        assert tx.provider_reference.startswith("REF-")
