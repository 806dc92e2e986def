"""Order REST API routes.

Routes:
    POST   /api/v1/orders/service                    - Buy a service tier
    POST   /api/v1/orders/project                    - Award a bid as a milestone order
    GET    /api/v1/orders                            - List the caller's orders
    GET    /api/v1/orders/{id}                       - Get order details
    GET    /api/v1/orders/{id}/status                - Lightweight status check
    GET    /api/v1/orders/{id}/events                - Audit trail
    GET    /api/v1/orders/{id}/transactions          - Ledger rows for the order
    POST   /api/v1/orders/{id}/requirements          - Buyer submits requirements
    POST   /api/v1/orders/{id}/deliver               - Seller delivers work
    POST   /api/v1/orders/{id}/revision              - Buyer requests a revision
    POST   /api/v1/orders/{id}/accept                - Buyer accepts, escrow released
    POST   /api/v1/orders/{id}/cancel                - Cancel before work starts
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from marketplace_escrow.api.deps import get_current_actor, get_order_service
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.orders import (
    AcceptDeliveryRequest,
    CancelOrderRequest,
    CreateProjectOrderRequest,
    CreateServiceOrderRequest,
    DeliverRequest,
    DeliveryResponse,
    OrderEventResponse,
    OrderResponse,
    OrderStatusResponse,
    RevisionRequestBody,
    RevisionResponse,
    SubmitRequirementsRequest,
)
from marketplace_escrow.schemas.payments import TransactionResponse
from marketplace_escrow.services import MilestoneDraft, OrderService

router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "/service",
    response_model=OrderResponse,
    status_code=201,
    summary="Order one tier of a service",
)
async def create_service_order(
    request: CreateServiceOrderRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Create a service order in PENDING_PAYMENT with the fee breakdown fixed."""
    order = await svc.create_service_order(
        actor,
        service_id=request.service_id,
        tier=request.tier,
        requirements=request.requirements,
        attachments=request.attachments,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/project",
    response_model=OrderResponse,
    status_code=201,
    summary="Award a bid as a milestone-funded order",
)
async def create_project_order(
    request: CreateProjectOrderRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    drafts = [
        MilestoneDraft(
            title=m.title,
            amount=m.amount,
            description=m.description,
            due_date=m.due_date,
        )
        for m in request.milestones
    ]
    order = await svc.create_project_order(actor, bid_id=request.bid_id, milestones=drafts)
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


@router.get("", response_model=list[OrderResponse], summary="List my orders")
async def list_orders(
    role: str | None = Query(default=None, pattern="^(buyer|seller)$"),
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> list[OrderResponse]:
    orders = await svc.list_orders(actor, role)
    return [OrderResponse.model_validate(o) for o in orders]


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.get_order(actor, order_id)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status with allowed events",
)
async def get_order_status(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderStatusResponse:
    status = await svc.get_status(actor, order_id)
    return OrderStatusResponse(**status)


@router.get(
    "/{order_id}/events",
    response_model=list[OrderEventResponse],
    summary="Get order audit trail",
)
async def get_order_events(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> list[OrderEventResponse]:
    events = await svc.get_events(actor, order_id)
    return [OrderEventResponse.model_validate(e) for e in events]


@router.get(
    "/{order_id}/transactions",
    response_model=list[TransactionResponse],
    summary="Get ledger rows for an order",
)
async def get_order_transactions(
    order_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> list[TransactionResponse]:
    rows = await svc.get_transactions(actor, order_id)
    return [TransactionResponse.model_validate(t) for t in rows]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "/{order_id}/requirements",
    response_model=OrderResponse,
    summary="Submit requirements and start work",
)
async def submit_requirements(
    order_id: uuid.UUID,
    request: SubmitRequirementsRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.submit_requirements(
        actor, order_id, requirements=request.requirements, attachments=request.attachments
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/deliver",
    response_model=DeliveryResponse,
    status_code=201,
    summary="Deliver work",
)
async def deliver(
    order_id: uuid.UUID,
    request: DeliverRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> DeliveryResponse:
    delivery = await svc.deliver(
        actor,
        order_id,
        message=request.message,
        milestone_id=request.milestone_id,
        attachments=request.attachments,
    )
    return DeliveryResponse.model_validate(delivery)


@router.post(
    "/{order_id}/revision",
    response_model=RevisionResponse,
    status_code=201,
    summary="Request a revision",
)
async def request_revision(
    order_id: uuid.UUID,
    request: RevisionRequestBody,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> RevisionResponse:
    revision = await svc.request_revision(
        actor, order_id, reason=request.reason, details=request.details
    )
    return RevisionResponse.model_validate(revision)


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    summary="Accept the delivery and release escrow",
)
async def accept_delivery(
    order_id: uuid.UUID,
    request: AcceptDeliveryRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.accept_delivery(actor, order_id, milestone_id=request.milestone_id)
    return OrderResponse.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an order")
async def cancel_order(
    order_id: uuid.UUID,
    request: CancelOrderRequest,
    actor: Actor = Depends(get_current_actor),
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await svc.cancel(actor, order_id, reason=request.reason)
    return OrderResponse.model_validate(order)
