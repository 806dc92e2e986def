"""Dispute REST API routes.

Routes:
    POST   /api/v1/disputes                   - Raise a dispute (freezes escrow)
    GET    /api/v1/disputes                   - List disputes (admins see all)
    GET    /api/v1/disputes/{id}              - Get dispute details
    POST   /api/v1/disputes/{id}/review       - Admin starts review
    POST   /api/v1/disputes/{id}/escalate     - Admin escalates
    POST   /api/v1/disputes/{id}/close        - Admin closes without a ruling
    POST   /api/v1/disputes/{id}/resolve      - Admin rules and moves money
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from marketplace_escrow.api.deps import get_current_actor, get_dispute_service
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.disputes import (
    CloseDisputeRequest,
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)
from marketplace_escrow.services import DisputeService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)


@router.post("", response_model=DisputeResponse, status_code=201, summary="Raise a dispute")
async def open_dispute(
    request: OpenDisputeRequest,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Raise a dispute. The order moves to DISPUTED and funded milestones freeze."""
    dispute = await svc.open_dispute(
        actor,
        order_id=request.order_id,
        category=request.category,
        title=request.title,
        description=request.description,
        evidence=request.evidence,
    )
    return DisputeResponse.model_validate(dispute)


@router.get("", response_model=list[DisputeResponse], summary="List disputes")
async def list_disputes(
    status: str | None = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> list[DisputeResponse]:
    disputes = await svc.list_disputes(actor, status)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse, summary="Get dispute details")
async def get_dispute(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.get_dispute(actor, dispute_id)
    return DisputeResponse.model_validate(dispute)


# ---------------------------------------------------------------------------
# Admin workflow
# ---------------------------------------------------------------------------


@router.post("/{dispute_id}/review", response_model=DisputeResponse, summary="Start review")
async def start_review(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.start_review(actor, dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.post("/{dispute_id}/escalate", response_model=DisputeResponse, summary="Escalate")
async def escalate_dispute(
    dispute_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.escalate(actor, dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/close",
    response_model=DisputeResponse,
    summary="Close without a ruling and resume work",
)
async def close_dispute(
    dispute_id: uuid.UUID,
    request: CloseDisputeRequest,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.close(actor, dispute_id, notes=request.notes)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(get_current_actor),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Rule on the dispute exactly once; refunds and releases go to the ledger."""
    dispute = await svc.resolve(
        actor,
        dispute_id,
        resolution=request.resolution,
        notes=request.notes,
        amount=request.amount,
    )
    logger.info(
        "dispute.resolved_via_api",
        dispute_id=str(dispute.id),
        resolution=dispute.resolution,
    )
    return DisputeResponse.model_validate(dispute)
