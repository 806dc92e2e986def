"""Human-readable identifiers handed to buyers and payment providers."""

from __future__ import annotations

import secrets
import string
import time

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_order_number() -> str:
    """Return an order number like ``ORD-LZ3K9Q1A-7F2C``."""
    return f"ORD-{_to_base36(time.time_ns() // 1_000_000)}-{_random_suffix(4)}"


def generate_payment_reference(prefix: str = "PAY") -> str:
    """Return a unique transaction reference embedded in gateway requests.

    Gateway A limits TransactionReference to 50 characters and Gateway B
    limits m_payment_id to 100; this stays well under both.
    """
    return f"{prefix}-{_to_base36(time.time_ns() // 1_000_000)}-{_random_suffix(8)}"
