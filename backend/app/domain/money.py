"""Money helpers for splitting a booking total into platform fee and service amount.

Amounts are ``Decimal`` in major units (dollars) everywhere except at the
gateway boundary, where :func:`to_minor_units` converts them to integer
cents. That conversion and the service amount quantization in
:func:`split_total` are the only places rounding happens.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

CENT = Decimal("0.01")
DEFAULT_PLATFORM_FEE_RATE = Decimal("0.20")


@dataclass(frozen=True)
class MoneySplit:
    """Platform fee and service amount that together make up a booking total."""

    total: Decimal
    fee: Decimal
    service_amount: Decimal


def to_decimal(value: Any) -> Decimal:
    """Coerce a numeric column value (Decimal, float, int, str) to Decimal without float noise."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount to integer minor units, rounding half-up to the cent."""
    dec_value = to_decimal(amount)
    cents = dec_value.quantize(CENT, rounding=ROUND_HALF_UP) * 100
    return int(cents.to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    """Convert integer minor units back to a two-place Decimal."""
    return (Decimal(int(cents)) / 100).quantize(CENT)


def split_total(
    total: Any,
    platform_fee: Optional[Any] = None,
    fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE,
) -> MoneySplit:
    """
    Split a booking total into fee and service amount.

    When the booking carries an explicit positive platform fee, the service
    amount is the remainder. Otherwise the fee is derived from ``fee_rate``
    as a markup on the service amount: ``total = service * (1 + fee_rate)``.
    The fee is always ``total - service``, so the two parts add up to the
    total exactly.
    """
    total_dec = to_decimal(total)
    fee_dec = to_decimal(platform_fee) if platform_fee is not None else Decimal("0")

    if fee_dec > 0:
        service = total_dec - fee_dec
    else:
        service = (total_dec / (Decimal("1") + to_decimal(fee_rate))).quantize(
            CENT, rounding=ROUND_HALF_UP
        )

    return MoneySplit(total=total_dec, fee=total_dec - service, service_amount=service)
