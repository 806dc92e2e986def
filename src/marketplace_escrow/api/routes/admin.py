"""Back-office routes.

Routes:
    POST   /api/v1/admin/ledger/expire-pending  - Fail pending rows past their TTL
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from marketplace_escrow.api.deps import get_current_actor, get_payment_service
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.payments import ExpirePendingResponse
from marketplace_escrow.services import PaymentService
from marketplace_escrow.services.guards import require_admin

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])
logger = get_logger(__name__)


@router.post(
    "/ledger/expire-pending",
    response_model=ExpirePendingResponse,
    summary="Expire abandoned pending payments",
)
async def expire_pending(
    actor: Actor = Depends(get_current_actor),
    svc: PaymentService = Depends(get_payment_service),
) -> ExpirePendingResponse:
    """Mark pending ledger rows older than the configured TTL as failed."""
    require_admin(actor)
    expired = await svc.expire_stale_pending()
    logger.info("admin.pending_expired", count=len(expired), admin=str(actor.id))
    return ExpirePendingResponse(
        expired=len(expired),
        references=[tx.provider_reference for tx in expired],
    )
