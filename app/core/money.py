"""Money helpers.

Ledger arithmetic is done in integer cents; Decimal values with two places
only appear at persistence and display boundaries.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

MoneyInput = Union[Decimal, int, float, str]

CENT = Decimal("0.01")


def to_decimal(value: MoneyInput) -> Decimal:
    """Convert an amount to a two-place Decimal (half-up)."""
    if value is None:
        raise ValueError("Amount is required")
    if isinstance(value, float):
        # str() first so 0.1 stays 0.1 and not its binary expansion
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def to_cents(value: MoneyInput) -> int:
    """Convert an amount in major units to integer cents."""
    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def percent_of_cents(cents: int, percent: int) -> int:
    """Return `percent`% of `cents`, rounded half-up to a whole cent."""
    numerator = cents * percent
    if numerator >= 0:
        return (numerator * 2 + 100) // 200
    return -((-numerator * 2 + 100) // 200)
