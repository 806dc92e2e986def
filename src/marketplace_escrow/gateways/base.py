"""Payment Gateway Protocol.

Defines the interface that every payment provider adapter implements.
This is a Protocol (structural subtyping) so concrete gateways don't need
to inherit from a base class; they just need to match the shape.

Amounts cross this boundary as integer minor units (cents). Conversion to
the provider's major-unit decimal string happens here, with Decimal, and
nowhere else.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from marketplace_escrow.domain.enums import PaymentOutcome, PaymentProvider

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PaymentRequest:
    """Input to a gateway's build_payment.

    Attributes:
        order_id: Order UUID as a string, echoed back in the webhook.
        amount: Amount to charge, in minor units.
        description: Shown to the buyer by the provider (truncated per provider).
        reference: Our correlation key; the pending ledger row is keyed on it.
        buyer_email: Customer email forwarded to the provider.
        milestone_id: Set when funding a single milestone.
        buyer_name: Optional full name ("First Last").
    """

    order_id: str
    amount: int
    description: str
    reference: str
    buyer_email: str
    milestone_id: str | None = None
    buyer_name: str | None = None


@dataclass(frozen=True)
class PaymentRedirect:
    """Output of build_payment: where to send the buyer, and with what."""

    provider: PaymentProvider
    reference: str
    redirect_url: str
    fields: dict[str, str] = field(default_factory=dict)
    form_html: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """A provider notification normalized to our vocabulary."""

    provider: PaymentProvider
    reference: str
    provider_transaction_id: str
    amount: int
    outcome: PaymentOutcome
    message: str = ""
    order_id: str = ""
    milestone_id: str | None = None
    raw: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookVerification:
    """Result of verify_webhook.

    Attributes:
        verified: True only if every provider check passed.
        event: The parsed event (present when verified).
        reason: Why verification failed, for logs only.
    """

    verified: bool
    event: WebhookEvent | None = None
    reason: str | None = None

    @classmethod
    def rejected(cls, reason: str) -> WebhookVerification:
        return cls(verified=False, reason=reason)


@runtime_checkable
class PaymentGateway(Protocol):
    """Interface for payment provider adapters.

    Usage:
        gateway = GatewayRegistry.create(PaymentProvider.GATEWAY_B, settings)
        redirect = gateway.build_payment(request)
        verification = await gateway.verify_webhook(form, source_ip="41.74.179.194")
    """

    provider: PaymentProvider

    @property
    def is_configured(self) -> bool: ...

    def build_payment(self, request: PaymentRequest) -> PaymentRedirect:
        """Build the signed redirect for a payment. Pure; no I/O."""
        ...

    async def verify_webhook(
        self,
        params: Mapping[str, str],
        source_ip: str | None = None,
    ) -> WebhookVerification:
        """Verify an inbound notification and parse it on success."""
        ...


# ---------------------------------------------------------------------------
# Helpers shared by the adapters
# ---------------------------------------------------------------------------


def minor_to_major(amount: int) -> str:
    """Convert cents to a two-decimal major-unit string: 51500 -> "515.00"."""
    return str((Decimal(amount) / 100).quantize(_CENT, rounding=ROUND_HALF_UP))


def major_to_minor(value: str) -> int:
    """Convert a provider decimal string to cents: "515.00" -> 51500.

    Raises:
        ValueError: If the value is not a finite decimal number.
    """
    try:
        amount = Decimal(value.strip())
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError(f"Malformed amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Malformed amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def digests_match(expected: str, received: str) -> bool:
    """Constant-time, case-insensitive hex digest comparison."""
    return hmac.compare_digest(
        expected.lower().encode("utf-8"),
        received.strip().lower().encode("utf-8"),
    )


def split_name(full_name: str | None) -> tuple[str, str]:
    """Split "First Middle Last" into ("First", "Middle Last")."""
    if not full_name:
        return "", ""
    parts = full_name.split(" ")
    return parts[0], " ".join(parts[1:])
