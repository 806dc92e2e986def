"""Domain enumerations for the marketplace escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OrderStatus(enum.StrEnum):
    """Lifecycle states of an order.

    State transitions are enforced by the OrderStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING_PAYMENT = "pending_payment"
    PENDING_REQUIREMENTS = "pending_requirements"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class OrderType(enum.StrEnum):
    SERVICE = "service"
    PROJECT = "project"


class ServiceTier(enum.StrEnum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class MilestoneStatus(enum.StrEnum):
    """Lifecycle states of a project milestone (see MilestoneStateMachine)."""

    PENDING = "pending"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class TransactionType(enum.StrEnum):
    """Kinds of money movement recorded in the ledger."""

    PAYMENT = "payment"
    ESCROW_FUND = "escrow_fund"
    ESCROW_RELEASE = "escrow_release"
    REFUND = "refund"
    PAYOUT = "payout"
    SUBSCRIPTION = "subscription"


class TransactionStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentProvider(enum.StrEnum):
    """Payment providers known to the ledger.

    MANUAL covers demo settlement and internal escrow moves.
    """

    GATEWAY_A = "gatewayA"
    GATEWAY_B = "gatewayB"
    MANUAL = "manual"


class PaymentOutcome(enum.StrEnum):
    """Normalized provider status after webhook verification."""

    SUCCESS = "success"
    PENDING = "pending"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SettlementOutcome(enum.StrEnum):
    """What the reconciler did with a verified webhook event."""

    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED_PENDING = "ignored_pending"
    MARKED_FAILED = "marked_failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    ORPHANED = "orphaned"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeResolution(enum.StrEnum):
    REFUND_FULL = "refund_full"
    REFUND_PARTIAL = "refund_partial"
    RELEASE_FUNDS = "release_funds"
    NO_ACTION = "no_action"
    OTHER = "other"


class DisputeCategory(enum.StrEnum):
    NOT_AS_DESCRIBED = "not_as_described"
    LATE_DELIVERY = "late_delivery"
    NO_DELIVERY = "no_delivery"
    POOR_QUALITY = "poor_quality"
    COMMUNICATION_ISSUES = "communication_issues"
    OTHER = "other"


class DeliveryType(enum.StrEnum):
    INITIAL = "initial"
    REVISION = "revision"


class BidStatus(enum.StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ActorRole(enum.StrEnum):
    """Roles supplied by the identity provider."""

    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the order_events table.

    Every order state transition MUST produce exactly one event.
    This is the append-only forensic trail for disputes.
    """

    # Lifecycle events
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    MILESTONE_FUNDED = "MILESTONE_FUNDED"
    REQUIREMENTS_SUBMITTED = "REQUIREMENTS_SUBMITTED"
    WORK_DELIVERED = "WORK_DELIVERED"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    DELIVERY_ACCEPTED = "DELIVERY_ACCEPTED"
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
    ORDER_CANCELLED = "ORDER_CANCELLED"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_CLOSED = "DISPUTE_CLOSED"
    DISPUTE_RESOLVED_RELEASE = "DISPUTE_RESOLVED_RELEASE"
    DISPUTE_RESOLVED_REFUND = "DISPUTE_RESOLVED_REFUND"
    DISPUTE_RESOLVED_RESUME = "DISPUTE_RESOLVED_RESUME"

    # Settlement anomalies
    PAYMENT_ORPHANED = "PAYMENT_ORPHANED"
