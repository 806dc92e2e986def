"""Pydantic schemas for the Disputes API."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace_escrow.domain.enums import DisputeCategory, DisputeResolution

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class OpenDisputeRequest(BaseModel):
    """Request body for raising a dispute against an order."""

    order_id: uuid.UUID
    category: DisputeCategory = Field(..., examples=["not_as_described"])
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(
        ...,
        min_length=10,
        max_length=5000,
        description="Detailed reason for the dispute",
    )
    evidence: list[str] | None = Field(default=None, description="Evidence URLs")


class CloseDisputeRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=5000)


class ResolveDisputeRequest(BaseModel):
    """Admin ruling. ``amount`` is required for refund_partial only."""

    resolution: DisputeResolution
    notes: str | None = Field(default=None, max_length=5000)
    amount: int | None = Field(
        default=None,
        gt=0,
        description="Partial refund to the buyer, in minor units",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    raised_by_id: uuid.UUID
    against_id: uuid.UUID
    category: str
    title: str
    description: str
    evidence: list[str] | None
    status: str
    resolution: str | None
    resolution_notes: str | None
    resolution_amount: int | None
    assigned_to: uuid.UUID | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime
