"""Database infrastructure: engine, ORM models, and repositories."""

from marketplace_escrow.infrastructure.database.engine import (
    close_db,
    create_schema,
    get_async_session,
    init_db,
)
from marketplace_escrow.infrastructure.database.orm_models import (
    Base,
    Dispute,
    Milestone,
    Order,
    OrderDelivery,
    OrderEvent,
    RevisionRequest,
    Transaction,
)
from marketplace_escrow.infrastructure.database.repositories import (
    CatalogRepository,
    DeliveryRepository,
    DisputeRepository,
    EventRepository,
    MilestoneRepository,
    OrderRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "Dispute",
    "Milestone",
    "Order",
    "OrderDelivery",
    "OrderEvent",
    "RevisionRequest",
    "Transaction",
    "CatalogRepository",
    "DeliveryRepository",
    "DisputeRepository",
    "EventRepository",
    "MilestoneRepository",
    "OrderRepository",
    "TransactionRepository",
    "create_schema",
    "get_async_session",
    "init_db",
    "close_db",
]
