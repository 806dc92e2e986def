"""Payment REST API routes and provider webhooks.

Routes:
    POST   /api/v1/payments/initiate               - Start a payment, get the redirect
    POST   /api/v1/payments/manual                 - Settle a manual payment
    GET    /api/v1/payments/{reference}            - Ledger row for a reference
    POST   /api/v1/payments/{reference}/refresh    - Poll the provider for a pending row
    POST   /api/v1/payments/gateway-a/notify       - Gateway A notification
    POST   /api/v1/payments/gateway-b/notify       - Gateway B ITN

Webhooks answer 200 for anything we have seen and decided on (including
unknown references and notifications that lost a race) so the provider
stops retrying. Only bad signatures (400) and provider outages (503)
ask for a retry or an investigation.
"""

from __future__ import annotations

from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.api.deps import (
    GatewayFactory,
    get_current_actor,
    get_db_session,
    get_gateway_factory,
    get_payment_service,
    get_reconciler,
)
from marketplace_escrow.api.middleware import PAYMENT_FAILED_MESSAGE
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import PaymentProvider, SettlementOutcome
from marketplace_escrow.domain.exceptions import (
    GatewayError,
    InvalidSignatureError,
    LedgerInvariantError,
    MarketplaceError,
    PaymentError,
    UnknownTransactionError,
)
from marketplace_escrow.infrastructure.redis_client import (
    is_webhook_processed,
    mark_webhook_processed,
)
from marketplace_escrow.logging_config import get_logger
from marketplace_escrow.schemas.common import ErrorResponse
from marketplace_escrow.schemas.payments import (
    InitiatePaymentRequest,
    ManualSettlementRequest,
    PaymentInitiationResponse,
    SettlementResponse,
    TransactionResponse,
)
from marketplace_escrow.services import (
    PaymentService,
    SettlementReconciler,
    SettlementResult,
)

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])
logger = get_logger(__name__)


def _settlement_response(result: SettlementResult) -> SettlementResponse:
    return SettlementResponse(
        outcome=result.outcome.value,
        reference=result.transaction.provider_reference,
        transaction_status=result.transaction.status,
        order_status=result.order_status,
        message=result.message,
    )


def client_ip(request: Request) -> str | None:
    """Best-effort source address behind proxies."""
    headers = request.headers
    if headers.get("cf-connecting-ip"):
        return headers["cf-connecting-ip"].strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if headers.get("x-real-ip"):
        return headers["x-real-ip"].strip()
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


@router.post(
    "/initiate",
    response_model=PaymentInitiationResponse,
    status_code=201,
    summary="Start a payment for an order or a milestone",
    responses={502: {"model": ErrorResponse}},
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    actor: Actor = Depends(get_current_actor),
    svc: PaymentService = Depends(get_payment_service),
) -> PaymentInitiationResponse | JSONResponse:
    """Open a pending ledger row and return where to send the buyer."""
    initiation = await svc.initiate_payment(
        actor,
        order_id=request.order_id,
        provider=request.provider,
        milestone_id=request.milestone_id,
        buyer_email=request.buyer_email or actor.email,
        buyer_name=request.buyer_name or actor.name,
    )
    tx = initiation.transaction
    if not initiation.succeeded:
        # Returned rather than raised so the failed ledger row is committed
        return JSONResponse(
            status_code=502,
            content=ErrorResponse(error="PAYMENT_ERROR", message=PAYMENT_FAILED_MESSAGE).model_dump(),
        )

    redirect = initiation.redirect
    return PaymentInitiationResponse(
        reference=tx.provider_reference,
        provider=tx.provider,
        amount=tx.amount,
        transaction_status=tx.status,
        redirect_url=redirect.redirect_url if redirect else None,
        fields=redirect.fields if redirect else {},
        form_html=redirect.form_html if redirect else None,
    )


@router.post(
    "/manual",
    response_model=SettlementResponse,
    summary="Settle a manual payment",
)
async def settle_manual_payment(
    request: ManualSettlementRequest,
    actor: Actor = Depends(get_current_actor),
    svc: PaymentService = Depends(get_payment_service),
) -> SettlementResponse:
    result = await svc.settle_manually(
        actor, request.reference, outcome=request.outcome, amount=request.amount
    )
    return _settlement_response(result)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


async def _handle_notification(
    provider: PaymentProvider,
    request: Request,
    session: AsyncSession,
    reconciler: SettlementReconciler,
    gateway_factory: GatewayFactory,
) -> None:
    """Verify and apply one notification.

    Returns normally when the notification was consumed (applied, duplicate,
    or deliberately ignored). Raises InvalidSignatureError or GatewayError
    when the provider should hear about it.
    """
    body = (await request.body()).decode("utf-8", errors="replace")
    params = dict(parse_qsl(body, keep_blank_values=True))
    source_ip = client_ip(request)

    gateway = gateway_factory(provider)
    verification = await gateway.verify_webhook(params, source_ip=source_ip)
    if not verification.verified or verification.event is None:
        raise InvalidSignatureError(provider.value, verification.reason or "rejected")

    event = verification.event
    if await is_webhook_processed(provider.value, event.reference, event.provider_transaction_id):
        logger.info("webhook.duplicate_skipped", provider=provider.value, reference=event.reference)
        return

    try:
        result = await reconciler.reconcile(provider, event)
    except UnknownTransactionError as exc:
        logger.warning("webhook.unknown_reference", provider=provider.value, error=exc.message)
        return
    except (PaymentError, LedgerInvariantError):
        raise
    except MarketplaceError as exc:
        # Nothing from a half-applied notification may be kept
        await session.rollback()
        logger.error(
            "webhook.apply_failed",
            provider=provider.value,
            reference=event.reference,
            error=exc.message,
            code=exc.code,
        )
        return

    if result.outcome != SettlementOutcome.IGNORED_PENDING:
        # Only a committed decision may short-circuit later deliveries
        await session.commit()
        await mark_webhook_processed(provider.value, event.reference, event.provider_transaction_id)
    logger.info(
        "webhook.processed",
        provider=provider.value,
        reference=event.reference,
        outcome=result.outcome.value,
    )


def _provider_unavailable(provider: PaymentProvider, exc: GatewayError) -> JSONResponse:
    # The provider retries the notification later
    logger.error("webhook.provider_unavailable", provider=provider.value, error=exc.message)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(error=exc.code, message=PAYMENT_FAILED_MESSAGE).model_dump(),
    )


@router.post("/gateway-a/notify", summary="Gateway A payment notification")
async def gateway_a_notify(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    reconciler: SettlementReconciler = Depends(get_reconciler),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> Response:
    provider = PaymentProvider.GATEWAY_A
    try:
        await _handle_notification(provider, request, session, reconciler, gateway_factory)
    except GatewayError as exc:
        return _provider_unavailable(provider, exc)
    return JSONResponse(content={"success": True})


@router.post("/gateway-b/notify", summary="Gateway B ITN")
async def gateway_b_notify(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    reconciler: SettlementReconciler = Depends(get_reconciler),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> Response:
    provider = PaymentProvider.GATEWAY_B
    try:
        await _handle_notification(provider, request, session, reconciler, gateway_factory)
    except GatewayError as exc:
        return _provider_unavailable(provider, exc)
    return PlainTextResponse("OK")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@router.get(
    "/{reference}",
    response_model=TransactionResponse,
    summary="Get the ledger row for a payment reference",
)
async def get_payment(
    reference: str,
    actor: Actor = Depends(get_current_actor),
    svc: PaymentService = Depends(get_payment_service),
) -> TransactionResponse:
    tx = await svc.get_payment_status(actor, reference)
    return TransactionResponse.model_validate(tx)


@router.post(
    "/{reference}/refresh",
    response_model=SettlementResponse,
    summary="Ask the provider for the status of a pending payment",
)
async def refresh_payment(
    reference: str,
    actor: Actor = Depends(get_current_actor),
    svc: PaymentService = Depends(get_payment_service),
) -> SettlementResponse:
    result = await svc.refresh_pending(actor, reference)
    return _settlement_response(result)
