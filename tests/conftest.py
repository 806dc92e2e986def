"""Shared test fixtures for the marketplace escrow test suite.

Provides:
    - An in-memory SQLite database (aiosqlite + StaticPool) per test
    - Settings with test credentials for both gateways
    - Buyer, seller and admin actors
    - Factory helpers for catalog rows and paid orders
    - The FastAPI app over the test database, with fake provider endpoints
"""

from __future__ import annotations

import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace_escrow.api.deps import get_app_settings, get_db_session, get_gateway_factory
from marketplace_escrow.config import Settings
from marketplace_escrow.domain.collaborators import Actor
from marketplace_escrow.domain.enums import ActorRole, PaymentProvider
from marketplace_escrow.gateways import GatewayRegistry
from marketplace_escrow.infrastructure.database.engine import (
    build_session_factory,
    create_schema,
)
from marketplace_escrow.infrastructure.database.orm_models import Bid, Project, Service
from marketplace_escrow.main import create_app
from marketplace_escrow.services import MilestoneDraft, OrderService, PaymentService

GATEWAY_A_PRIVATE_KEY = "test-private-key"
GATEWAY_B_PASSPHRASE = "jt7NOE43FZPn"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's .env file."""
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite://",
        manual_settlement_enabled=True,
        payment_min_amount=5000,
        payment_max_amount=100_000_000,
        pending_transaction_ttl_minutes=60,
        gateway_a_site_code="TSTSTE0001",
        gateway_a_private_key=GATEWAY_A_PRIVATE_KEY,
        gateway_a_api_key="test-api-key",
        gateway_a_api_url="https://api.gateway-a.test",
        gateway_b_merchant_id="10000100",
        gateway_b_merchant_key="46f0cd694581a",
        gateway_b_passphrase=GATEWAY_B_PASSPHRASE,
        gateway_b_sandbox=True,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


@pytest.fixture
def buyer() -> Actor:
    return Actor(id=uuid.uuid4(), email="buyer@example.com", name="Bea Buyer")


@pytest.fixture
def seller() -> Actor:
    return Actor(id=uuid.uuid4(), email="seller@example.com", name="Sam Seller")


@pytest.fixture
def admin() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.ADMIN)


@pytest.fixture
def stranger() -> Actor:
    return Actor(id=uuid.uuid4())


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


async def make_service(
    session,
    seller: Actor,
    price: int = 50000,
    revisions: int = 2,
    delivery_days: int = 3,
) -> Service:
    """Insert an active service with a single basic tier."""
    service = Service(
        seller_id=seller.id,
        title="Logo design",
        delivery_days=delivery_days,
        pricing_tiers={
            "basic": {"price": price, "deliveryDays": delivery_days, "revisions": revisions}
        },
        is_active=True,
    )
    session.add(service)
    await session.flush()
    return service


async def make_bid(session, buyer: Actor, seller: Actor, amount: int = 300000) -> Bid:
    """Insert a project owned by the buyer and a pending bid from the seller."""
    project = Project(buyer_id=buyer.id, title="Company website")
    session.add(project)
    await session.flush()
    bid = Bid(project_id=project.id, bidder_id=seller.id, amount=amount, delivery_days=14)
    session.add(bid)
    await session.flush()
    return bid


async def pay_manually(
    session,
    settings: Settings,
    buyer: Actor,
    order_id: uuid.UUID,
    milestone_id: uuid.UUID | None = None,
) -> str:
    """Initiate and settle a manual payment; returns the payment reference."""
    svc = PaymentService(session, settings=settings)
    initiation = await svc.initiate_payment(
        buyer, order_id, PaymentProvider.MANUAL, milestone_id=milestone_id
    )
    reference = initiation.transaction.provider_reference
    await svc.settle_manually(buyer, reference)
    return reference


async def make_service_order(session, settings: Settings, buyer: Actor, seller: Actor, **kwargs):
    service = await make_service(session, seller, **kwargs)
    svc = OrderService(session, settings=settings)
    return await svc.create_service_order(buyer, service.id, "basic")


async def make_in_progress_service_order(session, settings, buyer, seller, **kwargs):
    """A paid service order with requirements submitted."""
    order = await make_service_order(session, settings, buyer, seller, **kwargs)
    await pay_manually(session, settings, buyer, order.id)
    svc = OrderService(session, settings=settings)
    await svc.submit_requirements(buyer, order.id, "Blue and white, square format")
    return order


async def make_project_order(
    session,
    settings: Settings,
    buyer: Actor,
    seller: Actor,
    amounts: tuple[int, ...] = (100000, 200000),
):
    bid = await make_bid(session, buyer, seller, amount=sum(amounts))
    svc = OrderService(session, settings=settings)
    drafts = [
        MilestoneDraft(title=f"Milestone {i}", amount=amount)
        for i, amount in enumerate(amounts, start=1)
    ]
    return await svc.create_project_order(buyer, bid.id, drafts)


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


def headers_for(actor: Actor) -> dict[str, str]:
    """Identity headers the upstream auth proxy would set."""
    headers = {"X-User-Id": str(actor.id), "X-User-Role": actor.role.value}
    if actor.email:
        headers["X-User-Email"] = actor.email
    if actor.name:
        headers["X-User-Name"] = actor.name
    return headers


@pytest.fixture
def provider_stub() -> dict:
    """What the fake provider answers to outbound gateway calls."""
    return {"status_code": 200, "text": "VALID"}


@pytest_asyncio.fixture
async def gateway_http(provider_stub):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(provider_stub["status_code"], text=provider_stub["text"])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest_asyncio.fixture
async def app(session_factory, settings, gateway_http):
    """The real application wired to the test database and fake providers."""
    application = create_app()

    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def override_gateway_factory():
        return lambda provider: GatewayRegistry.create(provider, settings, http_client=gateway_http)

    application.dependency_overrides[get_db_session] = override_session
    application.dependency_overrides[get_app_settings] = lambda: settings
    application.dependency_overrides[get_gateway_factory] = override_gateway_factory
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
