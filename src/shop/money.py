"""Fixed-point money helpers.

All amounts are ``decimal.Decimal`` quantized to cents with ROUND_HALF_UP.
Binary floats are refused outright: they are where cent drift comes from.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, str, int]


def to_money(value: MoneyLike) -> Decimal:
    """Convert ``value`` to a Decimal rounded half-up to 2 places."""
    if isinstance(value, float):
        raise TypeError("binary floats are not accepted for money amounts")
    if isinstance(value, bool):
        raise TypeError("booleans are not money amounts")
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a decimal amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not a finite amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative(value: MoneyLike | None) -> Decimal:
    """Money value where missing or negative input counts as zero."""
    if value is None:
        return ZERO
    amount = to_money(value)
    return amount if amount > ZERO else ZERO


def parse_price(value: MoneyLike) -> Decimal:
    """Validate a catalog price: non-negative, at most two decimal digits."""
    if isinstance(value, float):
        raise TypeError("binary floats are not accepted for prices")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid price: {value!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"price must be a non-negative amount: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValueError(f"price may have at most 2 decimal digits: {value!r}")
    return amount.quantize(CENT)


def to_cents(value: MoneyLike) -> int:
    return int(to_money(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def money_str(value: MoneyLike) -> str:
    """Serialization form used for storage and JSON: ``"104.97"``."""
    return format(to_money(value), "f")
