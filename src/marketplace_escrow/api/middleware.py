"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware - injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware - catches domain exceptions -> structured JSON errors
    3. CORSMiddleware - handles the browser checkout pages

Gateway failures never leak provider detail to the caller: they all
answer with the same generic message and the detail goes to the log.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from marketplace_escrow.domain.exceptions import (
    AlreadyResolvedError,
    GatewayError,
    GatewayNotConfiguredError,
    IllegalTransitionError,
    InvalidAmountError,
    InvalidRequestError,
    InvalidSignatureError,
    LedgerInvariantError,
    MarketplaceError,
    NotFoundError,
    PaymentError,
    RevisionLimitExceededError,
    UnauthorizedError,
    UnknownTransactionError,
)
from marketplace_escrow.schemas.common import ErrorResponse

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

PAYMENT_FAILED_MESSAGE = "Payment could not be processed"


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=code, message=message).model_dump(),
    )


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except (NotFoundError, UnknownTransactionError) as exc:
            logger.warning("request.not_found", error=exc.message)
            return _error(404, exc.code, exc.message)
        except UnauthorizedError as exc:
            logger.warning("request.unauthorized", error=exc.message, path=request.url.path)
            return _error(403, exc.code, exc.message)
        except IllegalTransitionError as exc:
            logger.warning(
                "state_machine.illegal_transition",
                current=exc.current_state,
                attempted=exc.attempted_state,
            )
            return _error(409, exc.code, exc.message)
        except (RevisionLimitExceededError, AlreadyResolvedError) as exc:
            logger.warning("request.conflict", error=exc.message, code=exc.code)
            return _error(409, exc.code, exc.message)
        except (InvalidAmountError, InvalidRequestError) as exc:
            logger.warning("request.invalid", error=exc.message, code=exc.code)
            return _error(422, exc.code, exc.message)
        except InvalidSignatureError as exc:
            logger.warning("payment.invalid_signature", provider=exc.provider, reason=exc.reason)
            return _error(400, exc.code, PAYMENT_FAILED_MESSAGE)
        except GatewayNotConfiguredError as exc:
            logger.error("payment.gateway_not_configured", provider=exc.provider)
            return _error(503, exc.code, PAYMENT_FAILED_MESSAGE)
        except (GatewayError, PaymentError) as exc:
            logger.error("payment.gateway_error", error=exc.message)
            return _error(502, exc.code, PAYMENT_FAILED_MESSAGE)
        except LedgerInvariantError as exc:
            logger.exception("ledger.invariant_violation", error=exc.message)
            return _error(500, exc.code, "An unexpected error occurred")
        except MarketplaceError as exc:
            logger.error("domain.error", error=exc.message, code=exc.code)
            return _error(400, exc.code, exc.message)
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return _error(500, "INTERNAL_ERROR", "An unexpected error occurred")


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters: middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
