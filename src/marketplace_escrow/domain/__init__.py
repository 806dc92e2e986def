"""Domain layer: pure business logic with zero framework dependencies."""

from marketplace_escrow.domain.collaborators import (
    Actor,
    IdentityProvider,
    LoggingNotifier,
    Notifier,
)
from marketplace_escrow.domain.enums import (
    DisputeResolution,
    DisputeStatus,
    MilestoneStatus,
    OrderStatus,
    OrderType,
    PaymentProvider,
    TransactionStatus,
    TransactionType,
)
from marketplace_escrow.domain.exceptions import (
    IllegalTransitionError,
    InvalidAmountError,
    MarketplaceError,
    NotFoundError,
)
from marketplace_escrow.domain.fees import FeeBreakdown, FeeCalculator, calculate_fees
from marketplace_escrow.domain.state_machine import (
    DisputeStateMachine,
    MilestoneStateMachine,
    OrderStateMachine,
    validate_transition,
)

__all__ = [
    "Actor",
    "IdentityProvider",
    "LoggingNotifier",
    "Notifier",
    "DisputeResolution",
    "DisputeStatus",
    "MilestoneStatus",
    "OrderStatus",
    "OrderType",
    "PaymentProvider",
    "TransactionStatus",
    "TransactionType",
    "IllegalTransitionError",
    "InvalidAmountError",
    "MarketplaceError",
    "NotFoundError",
    "FeeBreakdown",
    "FeeCalculator",
    "calculate_fees",
    "DisputeStateMachine",
    "MilestoneStateMachine",
    "OrderStateMachine",
    "validate_transition",
]
