"""Tests for the order lifecycle (service orders and project awards)."""

from __future__ import annotations

import uuid

import pytest
from conftest import (
    make_bid,
    make_in_progress_service_order,
    make_service,
    make_service_order,
    pay_manually,
)

from marketplace_escrow.domain.enums import (
    DeliveryType,
    EventType,
    OrderStatus,
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
from marketplace_escrow.infrastructure.database.repositories import OrderRepository
from marketplace_escrow.services import LedgerService, MilestoneDraft, OrderService


class TestCreateServiceOrder:
    @pytest.mark.asyncio
    async def test_pricing_frozen_at_creation(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)

        assert order.status == OrderStatus.PENDING_PAYMENT
        assert order.subtotal == 50000
        assert order.buyer_fee == 1500
        assert order.total_amount == 51500
        assert order.seller_fee == 4000
        assert order.seller_earnings == 46000
        assert order.revisions_allowed == 2
        assert order.revisions_used == 0
        assert order.order_number.startswith("ORD-")
        assert order.seller_id == seller.id

    @pytest.mark.asyncio
    async def test_created_event(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        events = await OrderService(session, settings=settings).get_events(buyer, order.id)
        assert [e.event_type for e in events] == [EventType.ORDER_CREATED]
        assert events[0].old_status is None

    @pytest.mark.asyncio
    async def test_cannot_order_own_service(self, session, settings, seller) -> None:
        service = await make_service(session, seller)
        with pytest.raises(InvalidRequestError):
            await OrderService(session, settings=settings).create_service_order(
                seller, service.id, "basic"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier", ["standard", "platinum"])
    async def test_tier_must_be_offered(self, session, settings, buyer, seller, tier) -> None:
        service = await make_service(session, seller)
        with pytest.raises(InvalidRequestError):
            await OrderService(session, settings=settings).create_service_order(
                buyer, service.id, tier
            )

    @pytest.mark.asyncio
    async def test_inactive_service(self, session, settings, buyer, seller) -> None:
        service = await make_service(session, seller)
        service.is_active = False
        await session.flush()
        with pytest.raises(NotFoundError):
            await OrderService(session, settings=settings).create_service_order(
                buyer, service.id, "basic"
            )


class TestCreateProjectOrder:
    @pytest.mark.asyncio
    async def test_subtotal_is_sum_of_milestones(self, session, settings, buyer, seller) -> None:
        bid = await make_bid(session, buyer, seller)
        drafts = [MilestoneDraft("Design", 100000), MilestoneDraft("Build", 200000)]

        order = await OrderService(session, settings=settings).create_project_order(
            buyer, bid.id, drafts
        )

        assert order.subtotal == 300000
        assert order.total_amount == 309000
        assert order.seller_earnings == 276000
        assert [m.amount for m in order.milestones] == [100000, 200000]
        assert [m.sort_order for m in order.milestones] == [0, 1]
        assert all(m.status == "pending" for m in order.milestones)
        assert bid.status == "accepted"

    @pytest.mark.asyncio
    async def test_bid_can_only_be_awarded_once(self, session, settings, buyer, seller) -> None:
        bid = await make_bid(session, buyer, seller)
        svc = OrderService(session, settings=settings)
        await svc.create_project_order(buyer, bid.id, [MilestoneDraft("All", 300000)])
        with pytest.raises(IllegalTransitionError):
            await svc.create_project_order(buyer, bid.id, [MilestoneDraft("All", 300000)])

    @pytest.mark.asyncio
    async def test_only_project_owner(self, session, settings, buyer, seller, stranger) -> None:
        bid = await make_bid(session, buyer, seller)
        with pytest.raises(UnauthorizedError):
            await OrderService(session, settings=settings).create_project_order(
                stranger, bid.id, [MilestoneDraft("All", 300000)]
            )

    @pytest.mark.asyncio
    async def test_needs_milestones(self, session, settings, buyer, seller) -> None:
        bid = await make_bid(session, buyer, seller)
        with pytest.raises(InvalidRequestError):
            await OrderService(session, settings=settings).create_project_order(buyer, bid.id, [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100])
    async def test_milestone_amounts_positive(self, session, settings, buyer, seller, amount) -> None:
        bid = await make_bid(session, buyer, seller)
        with pytest.raises(InvalidAmountError):
            await OrderService(session, settings=settings).create_project_order(
                buyer, bid.id, [MilestoneDraft("All", amount)]
            )


class TestServiceOrderLifecycle:
    @pytest.mark.asyncio
    async def test_happy_path(self, session, settings, buyer, seller) -> None:
        svc = OrderService(session, settings=settings)
        order = await make_service_order(session, settings, buyer, seller)

        await pay_manually(session, settings, buyer, order.id)
        assert order.status == OrderStatus.PENDING_REQUIREMENTS

        await svc.submit_requirements(buyer, order.id, "Blue and white")
        assert order.status == OrderStatus.IN_PROGRESS
        assert order.delivery_deadline is not None

        delivery = await svc.deliver(seller, order.id, "First draft attached")
        assert order.status == OrderStatus.DELIVERED
        assert delivery.delivery_type == DeliveryType.INITIAL

        await svc.accept_delivery(buyer, order.id)
        assert order.status == OrderStatus.COMPLETED
        assert order.completed_at is not None

        ledger = LedgerService(session)
        releases = [
            tx for tx in await ledger.list_for_order(order.id)
            if tx.type == TransactionType.ESCROW_RELEASE
        ]
        assert [tx.amount for tx in releases] == [46000]
        assert releases[0].user_id == seller.id
        # Both fees stay with the platform
        assert await ledger.escrow_balance(order) == 5500

        events = await svc.get_events(buyer, order.id)
        assert [e.event_type for e in events] == [
            EventType.ORDER_CREATED,
            EventType.PAYMENT_CONFIRMED,
            EventType.REQUIREMENTS_SUBMITTED,
            EventType.WORK_DELIVERED,
            EventType.DELIVERY_ACCEPTED,
        ]

    @pytest.mark.asyncio
    async def test_mark_paid_requires_completed_payment(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        with pytest.raises(IllegalTransitionError):
            await OrderService(session, settings=settings).mark_paid(order.id)
        assert order.status == OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_cannot_submit_requirements_before_payment(
        self, session, settings, buyer, seller
    ) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        with pytest.raises(IllegalTransitionError):
            await OrderService(session, settings=settings).submit_requirements(
                buyer, order.id, "Too early"
            )


class TestConcurrentAcceptance:
    @pytest.mark.asyncio
    async def test_second_accept_loses_the_status_write(
        self, session_factory, settings, buyer, seller
    ) -> None:
        async with session_factory() as setup:
            order = await make_in_progress_service_order(setup, settings, buyer, seller)
            await OrderService(setup, settings=settings).deliver(seller, order.id, "Final files")
            await setup.commit()
            order_id = order.id

        async with session_factory() as first, session_factory() as second:
            # Both requests see the order as delivered
            stale = await OrderRepository(second).get_by_id(order_id)
            assert stale.status == OrderStatus.DELIVERED

            await OrderService(first, settings=settings).accept_delivery(buyer, order_id)
            await first.commit()

            with pytest.raises(IllegalTransitionError) as exc_info:
                await OrderService(second, settings=settings).accept_delivery(buyer, order_id)
            assert exc_info.value.current_state == OrderStatus.COMPLETED
            await second.rollback()

        async with session_factory() as check:
            rows = await LedgerService(check).list_for_order(order_id)
            releases = [tx for tx in rows if tx.type == TransactionType.ESCROW_RELEASE]
            assert [tx.amount for tx in releases] == [46000]


class TestRevisions:
    @pytest.mark.asyncio
    async def test_revision_loop_and_limit(self, session, settings, buyer, seller) -> None:
        svc = OrderService(session, settings=settings)
        order = await make_in_progress_service_order(session, settings, buyer, seller, revisions=1)

        await svc.deliver(seller, order.id, "v1")
        revision = await svc.request_revision(buyer, order.id, "Wrong colours")
        assert order.status == OrderStatus.REVISION_REQUESTED
        assert order.revisions_used == 1
        assert revision.delivery_id is not None

        redelivery = await svc.deliver(seller, order.id, "v2")
        assert redelivery.delivery_type == DeliveryType.REVISION

        with pytest.raises(RevisionLimitExceededError):
            await svc.request_revision(buyer, order.id, "Still wrong")
        assert order.status == OrderStatus.DELIVERED
        assert order.revisions_used == 1

    @pytest.mark.asyncio
    async def test_only_buyer_requests_revision(self, session, settings, buyer, seller) -> None:
        svc = OrderService(session, settings=settings)
        order = await make_in_progress_service_order(session, settings, buyer, seller)
        await svc.deliver(seller, order.id, "v1")
        with pytest.raises(UnauthorizedError):
            await svc.request_revision(seller, order.id, "Self-review")


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_only_seller_delivers(self, session, settings, buyer, seller) -> None:
        order = await make_in_progress_service_order(session, settings, buyer, seller)
        with pytest.raises(UnauthorizedError):
            await OrderService(session, settings=settings).deliver(buyer, order.id, "Done")

    @pytest.mark.asyncio
    async def test_only_buyer_accepts(self, session, settings, buyer, seller) -> None:
        svc = OrderService(session, settings=settings)
        order = await make_in_progress_service_order(session, settings, buyer, seller)
        await svc.deliver(seller, order.id, "Done")
        with pytest.raises(UnauthorizedError):
            await svc.accept_delivery(seller, order.id)
        assert order.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_stranger_cannot_read(self, session, settings, buyer, seller, stranger) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        with pytest.raises(UnauthorizedError):
            await OrderService(session, settings=settings).get_order(stranger, order.id)

    @pytest.mark.asyncio
    async def test_admin_can_read(self, session, settings, buyer, seller, admin) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        fetched = await OrderService(session, settings=settings).get_order(admin, order.id)
        assert fetched.id == order.id

    @pytest.mark.asyncio
    async def test_unknown_order(self, session, settings, buyer) -> None:
        with pytest.raises(NotFoundError):
            await OrderService(session, settings=settings).get_order(buyer, uuid.uuid4())


class TestCancel:
    @pytest.mark.asyncio
    async def test_seller_cancels_unpaid_order(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        await OrderService(session, settings=settings).cancel(seller, order.id, "Fully booked")
        assert order.status == OrderStatus.CANCELLED
        assert order.cancelled_by == seller.id
        assert order.cancellation_reason == "Fully booked"

    @pytest.mark.asyncio
    async def test_cancel_awaiting_requirements(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        await pay_manually(session, settings, buyer, order.id)
        await OrderService(session, settings=settings).cancel(buyer, order.id)
        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cannot_cancel_once_work_started(self, session, settings, buyer, seller) -> None:
        order = await make_in_progress_service_order(session, settings, buyer, seller)
        with pytest.raises(IllegalTransitionError):
            await OrderService(session, settings=settings).cancel(buyer, order.id)
        assert order.status == OrderStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_admin_is_not_a_party(self, session, settings, buyer, seller, admin) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        with pytest.raises(UnauthorizedError):
            await OrderService(session, settings=settings).cancel(admin, order.id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, session, settings, buyer, seller) -> None:
        order = await make_in_progress_service_order(session, settings, buyer, seller)
        status = await OrderService(session, settings=settings).get_status(seller, order.id)
        assert status["status"] == "in_progress"
        assert set(status["allowed_events"]) == {"seller_delivers", "dispute_opened"}

    @pytest.mark.asyncio
    async def test_list_orders_by_role(self, session, settings, buyer, seller) -> None:
        order = await make_service_order(session, settings, buyer, seller)
        svc = OrderService(session, settings=settings)

        assert [o.id for o in await svc.list_orders(buyer)] == [order.id]
        assert [o.id for o in await svc.list_orders(buyer, role="buyer")] == [order.id]
        assert await svc.list_orders(buyer, role="seller") == []
        assert [o.id for o in await svc.list_orders(seller, role="seller")] == [order.id]
