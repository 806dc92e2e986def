"""Tests for the settlement reconciler.

Every case starts from a real pending Gateway A row, then feeds the
reconciler the normalized event a verified notification would produce.
"""

from __future__ import annotations

import pytest
from conftest import make_project_order, make_service_order

from marketplace_escrow.domain.enums import (
    EventType,
    MilestoneStatus,
    OrderStatus,
    PaymentOutcome,
    PaymentProvider,
    SettlementOutcome,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import UnknownTransactionError
from marketplace_escrow.gateways.base import WebhookEvent
from marketplace_escrow.infrastructure.database.repositories import EventRepository
from marketplace_escrow.services import (
    LedgerService,
    OrderService,
    PaymentService,
    SettlementReconciler,
)


class ExplodingNotifier:
    async def notify(self, user_id, event_kind, payload) -> None:
        raise RuntimeError("mail server down")


def _event(tx, outcome=PaymentOutcome.SUCCESS, amount=None, provider=PaymentProvider.GATEWAY_A):
    return WebhookEvent(
        provider=provider,
        reference=tx.provider_reference,
        provider_transaction_id="gw-123",
        amount=tx.amount if amount is None else amount,
        outcome=outcome,
        message=f"status {outcome.value}",
    )


async def _pending_payment(session, settings, buyer, order, milestone_id=None):
    initiation = await PaymentService(session, settings=settings).initiate_payment(
        buyer, order.id, PaymentProvider.GATEWAY_A, milestone_id=milestone_id
    )
    return initiation.transaction


async def _event_types(session, order_id) -> list[str]:
    return [e.event_type for e in await EventRepository(session).get_by_order(order_id)]


class TestSuccess:
    @pytest.mark.asyncio
    async def test_applies_payment(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx)
        )

        assert result.outcome == SettlementOutcome.APPLIED
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.provider_transaction_id == "gw-123"
        assert order.status == OrderStatus.PENDING_REQUIREMENTS

    @pytest.mark.asyncio
    async def test_replay_is_a_no_op(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)
        reconciler = SettlementReconciler(session, settings)

        await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(tx))
        replay = await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(tx))

        assert replay.outcome == SettlementOutcome.ALREADY_PROCESSED
        assert (await _event_types(session, order.id)).count(EventType.PAYMENT_CONFIRMED) == 1

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_block(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)

        result = await SettlementReconciler(
            session, settings, notifier=ExplodingNotifier()
        ).reconcile(PaymentProvider.GATEWAY_A, _event(tx))

        assert result.applied
        assert order.status == OrderStatus.PENDING_REQUIREMENTS

    @pytest.mark.asyncio
    async def test_funds_milestone(self, session, settings, buyer, seller) -> None:
        order = await make_project_order(session, settings, buyer, seller)
        first = order.milestones[0]
        tx = await _pending_payment(session, settings, buyer, order, milestone_id=first.id)

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx)
        )

        assert result.applied
        assert first.status == MilestoneStatus.FUNDED
        assert order.status == OrderStatus.IN_PROGRESS
        assert order.delivery_deadline is not None

    @pytest.mark.asyncio
    async def test_second_funding_for_funded_milestone_is_orphaned(
        self, session, settings, buyer, seller
    ) -> None:
        order = await make_project_order(session, settings, buyer, seller)
        first = order.milestones[0]
        tx = await _pending_payment(session, settings, buyer, order, milestone_id=first.id)
        duplicate = await LedgerService(session).open_pending(
            order,
            TransactionType.ESCROW_FUND,
            first.amount,
            PaymentProvider.GATEWAY_A,
            user_id=buyer.id,
            milestone=first,
        )
        reconciler = SettlementReconciler(session, settings)
        await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(tx))

        result = await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(duplicate))

        assert result.outcome == SettlementOutcome.ORPHANED
        assert duplicate.status == TransactionStatus.COMPLETED
        assert first.status == MilestoneStatus.FUNDED
        assert order.status == OrderStatus.IN_PROGRESS
        assert EventType.PAYMENT_ORPHANED in await _event_types(session, order.id)


class TestRejectedSettlements:
    @pytest.mark.asyncio
    async def test_amount_mismatch(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx, amount=100)
        )

        assert result.outcome == SettlementOutcome.AMOUNT_MISMATCH
        assert tx.status == TransactionStatus.FAILED
        assert "Amount mismatch" in tx.error_message
        assert order.status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [PaymentOutcome.FAILED, PaymentOutcome.CANCELLED])
    async def test_failed_payment(self, session, settings, buyer, seller, outcome) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx, outcome=outcome)
        )

        assert result.outcome == SettlementOutcome.MARKED_FAILED
        assert tx.status == TransactionStatus.FAILED
        assert tx.provider_status == outcome.value
        assert order.status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_provider_pending_is_ignored(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx, outcome=PaymentOutcome.PENDING)
        )

        assert result.outcome == SettlementOutcome.IGNORED_PENDING
        assert tx.status == TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_success_after_failure_is_not_applied(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)
        reconciler = SettlementReconciler(session, settings)

        await reconciler.reconcile(
            PaymentProvider.GATEWAY_A, _event(tx, outcome=PaymentOutcome.FAILED)
        )
        late = await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(tx))

        assert late.outcome == SettlementOutcome.ALREADY_PROCESSED
        assert tx.status == TransactionStatus.FAILED
        assert order.status == OrderStatus.PENDING_PAYMENT


class TestUnknownReferences:
    @pytest.mark.asyncio
    async def test_unknown_reference(self, session, settings) -> None:
        event = WebhookEvent(
            provider=PaymentProvider.GATEWAY_A,
            reference="PAY-NOPE",
            provider_transaction_id="x",
            amount=51500,
            outcome=PaymentOutcome.SUCCESS,
        )
        with pytest.raises(UnknownTransactionError):
            await SettlementReconciler(session, settings).reconcile(PaymentProvider.GATEWAY_A, event)

    @pytest.mark.asyncio
    async def test_reference_is_scoped_to_provider(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)
        with pytest.raises(UnknownTransactionError):
            await SettlementReconciler(session, settings).reconcile(
                PaymentProvider.GATEWAY_B, _event(tx, provider=PaymentProvider.GATEWAY_B)
            )
        assert tx.status == TransactionStatus.PENDING


class TestOrphans:
    @pytest.mark.asyncio
    async def test_payment_for_cancelled_order(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        tx = await _pending_payment(session, settings, buyer, order)
        await OrderService(session, settings=settings).cancel(buyer, order.id, "Changed my mind")

        result = await SettlementReconciler(session, settings).reconcile(
            PaymentProvider.GATEWAY_A, _event(tx)
        )

        assert result.outcome == SettlementOutcome.ORPHANED
        assert tx.status == TransactionStatus.COMPLETED
        assert order.status == OrderStatus.CANCELLED
        assert EventType.PAYMENT_ORPHANED in await _event_types(session, order.id)

    @pytest.mark.asyncio
    async def test_second_payment_is_orphaned(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        first = await _pending_payment(session, settings, buyer, order)
        second = await _pending_payment(session, settings, buyer, order)
        reconciler = SettlementReconciler(session, settings)

        assert (await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(first))).applied
        result = await reconciler.reconcile(PaymentProvider.GATEWAY_A, _event(second))

        assert result.outcome == SettlementOutcome.ORPHANED
        assert order.status == OrderStatus.PENDING_REQUIREMENTS
