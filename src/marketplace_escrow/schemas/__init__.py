"""Pydantic API schemas."""

from marketplace_escrow.schemas.common import ErrorResponse, HealthResponse
from marketplace_escrow.schemas.disputes import (
    CloseDisputeRequest,
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)
from marketplace_escrow.schemas.orders import (
    AcceptDeliveryRequest,
    CancelOrderRequest,
    CreateProjectOrderRequest,
    CreateServiceOrderRequest,
    DeliverRequest,
    DeliveryResponse,
    MilestoneInput,
    MilestoneResponse,
    OrderEventResponse,
    OrderResponse,
    OrderStatusResponse,
    RevisionRequestBody,
    RevisionResponse,
    SubmitRequirementsRequest,
)
from marketplace_escrow.schemas.payments import (
    ExpirePendingResponse,
    InitiatePaymentRequest,
    ManualSettlementRequest,
    PaymentInitiationResponse,
    SettlementResponse,
    TransactionResponse,
)

__all__ = [
    "AcceptDeliveryRequest",
    "CancelOrderRequest",
    "CloseDisputeRequest",
    "CreateProjectOrderRequest",
    "CreateServiceOrderRequest",
    "DeliverRequest",
    "DeliveryResponse",
    "DisputeResponse",
    "ErrorResponse",
    "ExpirePendingResponse",
    "HealthResponse",
    "InitiatePaymentRequest",
    "ManualSettlementRequest",
    "MilestoneInput",
    "MilestoneResponse",
    "OpenDisputeRequest",
    "OrderEventResponse",
    "OrderResponse",
    "OrderStatusResponse",
    "PaymentInitiationResponse",
    "ResolveDisputeRequest",
    "RevisionRequestBody",
    "RevisionResponse",
    "SettlementResponse",
    "SubmitRequirementsRequest",
    "TransactionResponse",
]
