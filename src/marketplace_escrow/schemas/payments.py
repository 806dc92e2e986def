"""Pydantic schemas for the Payments API."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import PaymentOutcome, PaymentProvider

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class InitiatePaymentRequest(BaseModel):
    """Request body for starting a payment (full order or one milestone)."""

    order_id: uuid.UUID
    provider: PaymentProvider = Field(..., examples=["gatewayA"])
    milestone_id: uuid.UUID | None = Field(
        default=None,
        description="Set to fund a single project milestone",
    )
    buyer_email: str | None = Field(default=None, max_length=254)
    buyer_name: str | None = Field(default=None, max_length=200)


class ManualSettlementRequest(BaseModel):
    """Request body for settling a manual (demo/back-office) payment."""

    reference: str = Field(..., min_length=1, max_length=100)
    outcome: PaymentOutcome = PaymentOutcome.SUCCESS
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Amount received in minor units; defaults to the ledger amount",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    """Response schema for a ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    milestone_id: uuid.UUID | None
    user_id: uuid.UUID
    type: str
    amount: int
    currency: str
    provider: str
    provider_reference: str
    provider_transaction_id: str | None
    provider_status: str | None
    status: str
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


class PaymentInitiationResponse(BaseModel):
    """Where to send the buyer. Gateway B also offers an auto-submit form."""

    reference: str
    provider: str
    amount: int
    transaction_status: str
    redirect_url: str | None = None
    fields: dict[str, str] = Field(default_factory=dict)
    form_html: str | None = None


class SettlementResponse(BaseModel):
    outcome: str
    reference: str
    transaction_status: str
    order_status: str | None = None
    message: str = ""


class ExpirePendingResponse(BaseModel):
    expired: int
    references: list[str] = Field(default_factory=list)
