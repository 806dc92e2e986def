"""SQLAlchemy 2.0 ORM models for the marketplace escrow engine.

Escrow tables:
    1. orders             - A purchase of a service tier or an awarded project bid.
    2. milestones         - Independently escrowed sub-units of a project order.
    3. transactions       - The ledger: every money movement, source of truth.
    4. order_deliveries   - Work handed over by the seller.
    5. revision_requests  - Buyer requests for changes to a delivery.
    6. disputes           - Buyer/seller disputes and their resolution.
    7. order_events       - Append-only audit log of every order transition.

Catalog read models (owned by the catalog, read here):
    services, projects, bids

Design decisions:
    - UUIDs as primary keys (no sequential leakage of order volume).
    - Integer minor units for money (no floating point rounding errors).
    - Generic Uuid / JSON types so the schema runs on PostgreSQL and SQLite.
    - CHECK constraints on status values and on the fee identities, so a bad
      write fails at the database even if application code is wrong.
    - UNIQUE (provider, provider_reference) and a partial UNIQUE index on
      milestone releases back up webhook idempotency and no-double-release.
    - order_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_values(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


ORDER_STATUSES = (
    "pending_payment",
    "pending_requirements",
    "in_progress",
    "delivered",
    "revision_requested",
    "completed",
    "cancelled",
    "disputed",
    "refunded",
)
MILESTONE_STATUSES = (
    "pending",
    "funded",
    "in_progress",
    "delivered",
    "released",
    "disputed",
    "refunded",
)
TRANSACTION_TYPES = ("payment", "escrow_fund", "escrow_release", "refund", "payout", "subscription")
TRANSACTION_STATUSES = ("pending", "completed", "failed")
DISPUTE_STATUSES = ("open", "under_review", "escalated", "resolved", "closed")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


# ---------------------------------------------------------------------------
# Catalog read models
# ---------------------------------------------------------------------------
class Service(TimestampMixin, Base):
    """A seller's service listing with per-tier pricing."""

    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    delivery_days: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    pricing_tiers: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment='e.g. {"basic": {"price": 50000, "deliveryDays": 3, "revisions": 2}}',
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_service_seller", "seller_id"),)


class Project(TimestampMixin, Base):
    """A buyer's posted project that sellers bid on."""

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")


class Bid(TimestampMixin, Base):
    """A seller's bid on a project."""

    __tablename__ = "bids"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    bidder_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    __table_args__ = (Index("idx_bid_project", "project_id"),)


# ---------------------------------------------------------------------------
# 1. orders
# ---------------------------------------------------------------------------
class Order(TimestampMixin, Base):
    """A purchase between a buyer and a seller, with its fee breakdown frozen."""

    __tablename__ = "orders"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)

    # --- Participants ---
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    seller_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # --- Origin ---
    order_type: Mapped[str] = mapped_column(String(10), nullable=False)
    service_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("services.id", ondelete="SET NULL"), nullable=True
    )
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True
    )
    bid_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("bids.id", ondelete="SET NULL"), nullable=True
    )
    service_tier: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # --- Requirements ---
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachments: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    # --- Financials (minor units, frozen at creation) ---
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    buyer_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    seller_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="subtotal + buyer_fee: what the buyer pays"
    )
    seller_earnings: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="subtotal - seller_fee: what the seller receives"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")

    # --- Timeline ---
    delivery_days: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Revisions ---
    revisions_allowed: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    revisions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default="pending_payment",
        comment="Current lifecycle state (guarded by OrderStateMachine)",
    )

    # --- Cancellation ---
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Reviews (flags only; reviews live elsewhere) ---
    buyer_has_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_has_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Relationships ---
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Milestone.sort_order.asc()",
        lazy="selectin",
    )

    # --- Table Constraints & Indexes ---
    __table_args__ = (
        CheckConstraint(_in_values("status", ORDER_STATUSES), name="ck_order_valid_status"),
        CheckConstraint("order_type IN ('service', 'project')", name="ck_order_valid_type"),
        CheckConstraint("subtotal > 0", name="ck_order_positive_subtotal"),
        CheckConstraint("total_amount = subtotal + buyer_fee", name="ck_order_total_identity"),
        CheckConstraint(
            "seller_earnings = subtotal - seller_fee", name="ck_order_earnings_identity"
        ),
        CheckConstraint(
            "revisions_used >= 0 AND revisions_used <= revisions_allowed",
            name="ck_order_revision_bounds",
        ),
        Index("idx_order_status", "status"),
        Index("idx_order_buyer", "buyer_id"),
        Index("idx_order_seller", "seller_id"),
        Index("idx_order_created_at", "created_at"),
    )

    @property
    def is_project(self) -> bool:
        return self.order_type == "project"

    def __repr__(self) -> str:
        return (
            f"<Order {self.order_number} status={self.status} "
            f"total={self.total_amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. milestones
# ---------------------------------------------------------------------------
class Milestone(TimestampMixin, Base):
    """A project sub-unit with its own all-or-nothing escrow."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        comment="Escrow state (guarded by MilestoneStateMachine)",
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    order: Mapped[Order] = relationship("Order", back_populates="milestones")

    __table_args__ = (
        CheckConstraint(
            _in_values("status", MILESTONE_STATUSES), name="ck_milestone_valid_status"
        ),
        CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        UniqueConstraint("order_id", "sort_order", name="uq_milestone_order_sort"),
        Index("idx_milestone_order", "order_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone id={self.id} #{self.sort_order} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. transactions (the ledger)
# ---------------------------------------------------------------------------
class Transaction(TimestampMixin, Base):
    """A single money movement.

    Rows are append-mostly: the only mutation is the one-way status change
    pending -> completed | failed, made with a conditional update.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.id", ondelete="RESTRICT"), nullable=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, comment="Payer for payments/funding, payee for releases/refunds"
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")

    # --- Provider correlation ---
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_reference: Mapped[str] = mapped_column(
        String(100), nullable=False, comment="Our reference, sent to the provider"
    )
    provider_transaction_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, comment="The provider's own id, recorded on completion"
    )
    provider_status: Mapped[str | None] = mapped_column(String(40), nullable=True)

    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(_in_values("type", TRANSACTION_TYPES), name="ck_tx_valid_type"),
        CheckConstraint(_in_values("status", TRANSACTION_STATUSES), name="ck_tx_valid_status"),
        CheckConstraint("amount > 0", name="ck_tx_positive_amount"),
        UniqueConstraint("provider", "provider_reference", name="uq_tx_provider_reference"),
        Index(
            "uq_tx_single_milestone_release",
            "milestone_id",
            unique=True,
            postgresql_where=text("type = 'escrow_release'"),
            sqlite_where=text("type = 'escrow_release'"),
        ),
        Index("idx_tx_order", "order_id"),
        Index("idx_tx_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.provider}:{self.provider_reference} type={self.type} "
            f"status={self.status} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 4. order_deliveries
# ---------------------------------------------------------------------------
class OrderDelivery(Base):
    """Work handed over by the seller for an order (or one milestone)."""

    __tablename__ = "order_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("milestones.id", ondelete="SET NULL"), nullable=True
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    delivery_type: Mapped[str] = mapped_column(String(10), nullable=False, default="initial")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_delivery_order", "order_id", "created_at"),)


# ---------------------------------------------------------------------------
# 5. revision_requests
# ---------------------------------------------------------------------------
class RevisionRequest(Base):
    """A buyer's request for changes, tied to the delivery it responds to."""

    __tablename__ = "revision_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    delivery_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("order_deliveries.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_revision_order", "order_id"),)


# ---------------------------------------------------------------------------
# 6. disputes
# ---------------------------------------------------------------------------
class Dispute(TimestampMixin, Base):
    """A dispute over an order, resolved at most once by an admin."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    raised_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    against_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category: Mapped[str] = mapped_column(String(24), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(_in_values("status", DISPUTE_STATUSES), name="ck_dispute_valid_status"),
        Index("idx_dispute_order", "order_id"),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} order={self.order_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 7. order_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class OrderEvent(Base):
    """Immutable audit record of every state transition in an order's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "order_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    new_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User id that triggered the event, or SYSTEM for webhooks",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_order", "order_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Order, Milestone, Transaction, Dispute):
    event.listen(_model, "before_update", _set_updated_at)
