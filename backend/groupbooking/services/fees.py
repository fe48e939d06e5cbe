"""Fee calculator: organizer price to guest-facing total.

commission = price * COMMISSION_RATE
surcharge  = price * GATEWAY_RATE + GATEWAY_FIXED_FEE
total      = price + commission + surcharge

Each component is rounded half-up to cents on its own before summing, and
everything is returned in integer cents.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from groupbooking.config import settings

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    owner_cents: int
    commission_cents: int
    surcharge_cents: int

    @property
    def service_fee_cents(self) -> int:
        return self.commission_cents + self.surcharge_cents

    @property
    def total_cents(self) -> int:
        return self.owner_cents + self.service_fee_cents


def _to_cents(amount: Decimal) -> int:
    return int(amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def calculate_fees(
    price: Decimal | str | int,
    commission_rate: Optional[Decimal] = None,
    gateway_rate: Optional[Decimal] = None,
    gateway_fixed: Optional[Decimal] = None,
) -> FeeBreakdown:
    """Return the fee breakdown for an organizer price in major currency units."""
    price = Decimal(str(price))
    if price < 0:
        raise ValueError("price cannot be negative")
    commission_rate = settings.COMMISSION_RATE if commission_rate is None else commission_rate
    gateway_rate = settings.GATEWAY_RATE if gateway_rate is None else gateway_rate
    gateway_fixed = settings.GATEWAY_FIXED_FEE if gateway_fixed is None else gateway_fixed

    return FeeBreakdown(
        owner_cents=_to_cents(price),
        commission_cents=_to_cents(price * commission_rate),
        surcharge_cents=_to_cents(price * gateway_rate + gateway_fixed),
    )


def format_cents(cents: int, currency: str = "EUR") -> str:
    return f"{Decimal(cents) / 100:.2f} {currency.upper()}"
