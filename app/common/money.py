"""
Decimal money helpers. Amounts are stored as Numeric(15, 2).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str, None]


def to_money(value: Number) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Processor APIs take integer minor units."""
    return int(to_money(value) * 100)


def from_cents(cents: int) -> Decimal:
    return to_money(Decimal(cents) / 100)


def format_money(value: Number) -> str:
    return f"${to_money(value):,.2f}"
