"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services, the current actor, and configuration.

Identity is issued elsewhere; the default provider trusts the headers set
by the upstream auth proxy (X-User-Id, X-User-Role, X-User-Email, X-User-Name).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_escrow.config import Settings, get_settings
from marketplace_escrow.domain.collaborators import Actor, LoggingNotifier, Notifier
from marketplace_escrow.domain.enums import ActorRole, PaymentProvider
from marketplace_escrow.domain.exceptions import UnauthorizedError
from marketplace_escrow.gateways import GatewayRegistry
from marketplace_escrow.gateways.base import PaymentGateway
from marketplace_escrow.infrastructure.database.engine import get_async_session
from marketplace_escrow.services import (
    DisputeService,
    OrderService,
    PaymentService,
    SettlementReconciler,
)

GatewayFactory = Callable[[PaymentProvider], PaymentGateway]


class HeaderIdentityProvider:
    """Builds the Actor from trusted upstream headers."""

    def current_user(self, request: Request) -> Actor:
        raw_id = request.headers.get("X-User-Id")
        if not raw_id:
            raise UnauthorizedError("Missing X-User-Id header")
        try:
            user_id = uuid.UUID(raw_id)
        except ValueError as err:
            raise UnauthorizedError("Malformed X-User-Id header") from err

        raw_role = (request.headers.get("X-User-Role") or ActorRole.USER.value).lower()
        try:
            role = ActorRole(raw_role)
        except ValueError as err:
            raise UnauthorizedError(f"Unknown role: {raw_role}") from err

        return Actor(
            id=user_id,
            role=role,
            email=request.headers.get("X-User-Email"),
            name=request.headers.get("X-User-Name"),
        )


_identity_provider = HeaderIdentityProvider()
_notifier = LoggingNotifier()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_current_actor(request: Request) -> Actor:
    """Provide the authenticated caller."""
    return _identity_provider.current_user(request)


def get_notifier() -> Notifier:
    return _notifier


def get_gateway_factory(settings: Settings = Depends(get_app_settings)) -> GatewayFactory:
    """Provide a callable that builds a gateway adapter for a provider."""

    def factory(provider: PaymentProvider) -> PaymentGateway:
        return GatewayRegistry.create(provider, settings)

    return factory


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_order_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    notifier: Notifier = Depends(get_notifier),
) -> OrderService:
    return OrderService(session, settings=settings, notifier=notifier)


def get_payment_service(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
    notifier: Notifier = Depends(get_notifier),
) -> PaymentService:
    return PaymentService(
        session, settings=settings, gateway_factory=gateway_factory, notifier=notifier
    )


def get_reconciler(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    notifier: Notifier = Depends(get_notifier),
) -> SettlementReconciler:
    return SettlementReconciler(session, settings=settings, notifier=notifier)


def get_dispute_service(
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
) -> DisputeService:
    return DisputeService(session, notifier=notifier)
