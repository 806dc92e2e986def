"""Application services: use case orchestration."""

from marketplace_escrow.services.dispute_service import DisputeService
from marketplace_escrow.services.ledger_service import LedgerService
from marketplace_escrow.services.milestone_service import MilestoneService
from marketplace_escrow.services.order_service import MilestoneDraft, OrderService
from marketplace_escrow.services.payment_service import PaymentInitiation, PaymentService
from marketplace_escrow.services.settlement_service import SettlementReconciler, SettlementResult

__all__ = [
    "DisputeService",
    "LedgerService",
    "MilestoneDraft",
    "MilestoneService",
    "OrderService",
    "PaymentInitiation",
    "PaymentService",
    "SettlementReconciler",
    "SettlementResult",
]
