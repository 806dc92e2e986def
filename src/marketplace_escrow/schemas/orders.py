"""Pydantic schemas for the Orders API.

Request schemas validate shape only; business rules (who may act, which
transitions are legal) live in the services. Money is always integer
minor units.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import ServiceTier

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateServiceOrderRequest(BaseModel):
    """Request body for buying one tier of a service."""

    service_id: uuid.UUID
    tier: ServiceTier = Field(..., examples=["basic"])
    requirements: str | None = Field(default=None, max_length=10_000)
    attachments: list[str] | None = Field(
        default=None,
        description="URLs of files the buyer attaches to the order",
    )


class MilestoneInput(BaseModel):
    """One milestone of an awarded project bid."""

    title: str = Field(..., min_length=1, max_length=200)
    amount: int = Field(..., gt=0, description="Milestone amount in minor units")
    description: str | None = Field(default=None, max_length=5000)
    due_date: datetime | None = None


class CreateProjectOrderRequest(BaseModel):
    """Request body for awarding a bid as a milestone-funded project order."""

    bid_id: uuid.UUID
    milestones: list[MilestoneInput]


class SubmitRequirementsRequest(BaseModel):
    requirements: str = Field(..., min_length=1, max_length=10_000)
    attachments: list[str] | None = None


class DeliverRequest(BaseModel):
    """Request body for a seller delivery."""

    message: str = Field(..., min_length=1, max_length=10_000)
    milestone_id: uuid.UUID | None = Field(
        default=None,
        description="Required for project orders: the milestone being delivered",
    )
    attachments: list[str] | None = None


class RevisionRequestBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)
    details: str | None = Field(default=None, max_length=10_000)


class AcceptDeliveryRequest(BaseModel):
    milestone_id: uuid.UUID | None = None


class CancelOrderRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    amount: int
    sort_order: int
    status: str
    due_date: datetime | None
    funded_at: datetime | None
    delivered_at: datetime | None
    released_at: datetime | None


class OrderResponse(BaseModel):
    """Response schema for an order, fee breakdown included."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    buyer_id: uuid.UUID
    seller_id: uuid.UUID
    order_type: str
    service_id: uuid.UUID | None
    project_id: uuid.UUID | None
    bid_id: uuid.UUID | None
    service_tier: str | None
    title: str
    requirements: str | None
    attachments: list[str] | None
    subtotal: int
    buyer_fee: int
    seller_fee: int
    total_amount: int
    seller_earnings: int
    currency: str
    delivery_days: int
    delivery_deadline: datetime | None
    delivered_at: datetime | None
    accepted_at: datetime | None
    completed_at: datetime | None
    revisions_allowed: int
    revisions_used: int
    status: str
    cancelled_by: uuid.UUID | None
    cancellation_reason: str | None
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    milestone_id: uuid.UUID | None
    message: str
    attachments: list[str] | None
    delivery_type: str
    created_at: datetime


class RevisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    delivery_id: uuid.UUID | None
    reason: str
    details: str | None
    status: str
    created_at: datetime


class OrderEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class OrderStatusResponse(BaseModel):
    """Lightweight status check response."""

    order_id: uuid.UUID
    status: str
    revisions_used: int
    revisions_allowed: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
