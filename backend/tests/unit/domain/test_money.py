from decimal import Decimal

import pytest

from app.domain.money import (
    MoneySplit,
    from_minor_units,
    split_total,
    to_decimal,
    to_minor_units,
)


def test_split_uses_explicit_platform_fee() -> None:
    split = split_total(Decimal("120.00"), Decimal("20.00"))

    assert split == MoneySplit(
        total=Decimal("120.00"), fee=Decimal("20.00"), service_amount=Decimal("100.00")
    )


@pytest.mark.parametrize("platform_fee", [None, Decimal("0"), 0])
def test_split_derives_fee_from_rate_when_fee_missing(platform_fee) -> None:
    split = split_total(Decimal("120.00"), platform_fee, fee_rate=Decimal("0.20"))

    assert split.service_amount == Decimal("100.00")
    assert split.fee == Decimal("20.00")


def test_split_parts_always_add_up_to_total() -> None:
    split = split_total(Decimal("100.00"), None, fee_rate=Decimal("0.20"))

    # 100 / 1.2 = 83.333... rounds half-up to 83.33; the fee absorbs the remainder
    assert split.service_amount == Decimal("83.33")
    assert split.fee == Decimal("16.67")
    assert split.fee + split.service_amount == split.total


def test_to_minor_units_rounds_half_up() -> None:
    assert to_minor_units(Decimal("10.005")) == 1001
    assert to_minor_units(Decimal("10.004")) == 1000
    assert to_minor_units("19.99") == 1999
    assert to_minor_units(0.1 + 0.2) == 30


def test_from_minor_units_returns_two_place_decimal() -> None:
    assert from_minor_units(10000) == Decimal("100.00")
    assert str(from_minor_units(5)) == "0.05"


def test_to_decimal_handles_none_and_floats() -> None:
    assert to_decimal(None) == Decimal("0")
    assert to_decimal(12.5) == Decimal("12.5")
    assert to_decimal(Decimal("3.10")) == Decimal("3.10")
