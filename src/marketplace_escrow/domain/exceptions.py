"""Domain exceptions for the marketplace escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""


class MarketplaceError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "MARKETPLACE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation Errors ---


class InvalidAmountError(MarketplaceError):
    """Raised when a money amount is not a positive integer or out of range."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_AMOUNT")


class InvalidRequestError(MarketplaceError):
    """Raised for malformed input that is not a money problem (e.g. no milestones)."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_REQUEST")


class NotFoundError(MarketplaceError):
    """Raised when an entity ID does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code="NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = entity_id


class UnauthorizedError(MarketplaceError):
    """Raised when the actor is not a party to the order or lacks the role."""

    def __init__(self, message: str = "Not authorized to perform this action") -> None:
        super().__init__(message=message, code="UNAUTHORIZED")


# --- State Machine Errors ---


class IllegalTransitionError(MarketplaceError):
    """Raised when an attempted state transition is not allowed.

    Example: in_progress -> cancelled (funds are already at risk)
    """

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Illegal transition: {current_state} -> {attempted_state}",
            code="ILLEGAL_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


class RevisionLimitExceededError(MarketplaceError):
    """Raised when the buyer has used every revision the order allows."""

    def __init__(self, revisions_allowed: int) -> None:
        super().__init__(
            message=f"Revision limit reached ({revisions_allowed} allowed)",
            code="REVISION_LIMIT_EXCEEDED",
        )
        self.revisions_allowed = revisions_allowed


class AlreadyResolvedError(MarketplaceError):
    """Raised when a dispute is resolved a second time."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute already resolved: {dispute_id}",
            code="ALREADY_RESOLVED",
        )
        self.dispute_id = dispute_id


# --- Payment Errors ---


class PaymentError(MarketplaceError):
    """Base class for gateway-facing failures.

    The message carried here is for logs; callers only ever see a generic
    "payment could not be processed" text.
    """

    def __init__(self, message: str, code: str = "PAYMENT_ERROR") -> None:
        super().__init__(message=message, code=code)


class GatewayNotConfiguredError(PaymentError):
    """Raised when the provider credentials are missing."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            message=f"Payment gateway not configured: {provider}",
            code="GATEWAY_NOT_CONFIGURED",
        )
        self.provider = provider


class InvalidSignatureError(PaymentError):
    """Raised when an inbound webhook fails signature, IP or callback checks."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            message=f"Webhook verification failed for {provider}: {reason}",
            code="INVALID_SIGNATURE",
        )
        self.provider = provider
        self.reason = reason


class GatewayError(PaymentError):
    """Raised when talking to the provider fails (network, bad response)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(
            message=f"{provider}: {message}",
            code="GATEWAY_ERROR",
        )
        self.provider = provider


class UnknownTransactionError(MarketplaceError):
    """Raised when a webhook references a transaction we never created."""

    def __init__(self, provider: str, reference: str) -> None:
        super().__init__(
            message=f"Unknown transaction reference for {provider}: {reference}",
            code="UNKNOWN_TRANSACTION",
        )
        self.provider = provider
        self.reference = reference


# --- Ledger Invariants ---


class LedgerInvariantError(MarketplaceError):
    """Raised when a write would break a ledger invariant (e.g. double release).

    This signals a correctness bug, never a user mistake.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="LEDGER_INVARIANT_VIOLATION")
