"""Platform fee calculation.

The buyer pays a service fee on top of the gross price and the seller has a
commission deducted from it. Both fees are computed independently from the
gross amount and rounded half-up to the nearest minor unit:

    buyer_total = gross + round_half_up(gross * buyer_rate)
    seller_net  = gross - round_half_up(gross * seller_rate)

All arithmetic uses Decimal; amounts are integer minor units (cents).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from marketplace_escrow.domain.exceptions import InvalidAmountError

if TYPE_CHECKING:
    from marketplace_escrow.config import Settings

DEFAULT_BUYER_FEE_RATE = Decimal("0.03")
DEFAULT_SELLER_FEE_RATE = Decimal("0.08")


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee split for a single gross amount (all values in minor units)."""

    gross: int
    buyer_fee: int
    seller_fee: int
    buyer_total: int
    seller_net: int

    @property
    def platform_revenue(self) -> int:
        return self.buyer_fee + self.seller_fee


class FeeCalculator:
    """Pure fee calculator. Rates are injected, never read from globals.

    Usage:
        calc = FeeCalculator()
        calc.calculate(50000)  # FeeBreakdown(50000, 1500, 4000, 51500, 46000)
    """

    def __init__(
        self,
        buyer_rate: Decimal = DEFAULT_BUYER_FEE_RATE,
        seller_rate: Decimal = DEFAULT_SELLER_FEE_RATE,
    ) -> None:
        buyer_rate = Decimal(str(buyer_rate))
        seller_rate = Decimal(str(seller_rate))
        if not (0 <= buyer_rate < 1) or not (0 <= seller_rate < 1):
            raise ValueError("Fee rates must be in [0, 1)")
        self.buyer_rate = buyer_rate
        self.seller_rate = seller_rate

    @classmethod
    def from_settings(cls, settings: Settings) -> FeeCalculator:
        return cls(buyer_rate=settings.buyer_fee_rate, seller_rate=settings.seller_fee_rate)

    def calculate(self, gross: int) -> FeeBreakdown:
        """Split a gross amount into buyer fee, seller fee and the two totals.

        Raises:
            InvalidAmountError: If gross is not a positive integer.
        """
        # bool is an int subclass; reject it explicitly
        if isinstance(gross, bool) or not isinstance(gross, int):
            raise InvalidAmountError(f"Amount must be an integer in minor units, got {gross!r}")
        if gross <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {gross}")

        buyer_fee = _round_half_up(Decimal(gross) * self.buyer_rate)
        seller_fee = _round_half_up(Decimal(gross) * self.seller_rate)
        return FeeBreakdown(
            gross=gross,
            buyer_fee=buyer_fee,
            seller_fee=seller_fee,
            buyer_total=gross + buyer_fee,
            seller_net=gross - seller_fee,
        )


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


_default_calculator = FeeCalculator()


def calculate_fees(gross: int) -> FeeBreakdown:
    """Calculate fees with the default platform rates (3% buyer, 8% seller)."""
    return _default_calculator.calculate(gross)
