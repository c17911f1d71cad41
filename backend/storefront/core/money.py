"""
Money helpers shared by pricing, payment metadata and refunds.

Amounts are carried as ``Decimal`` rounded half-up to cents. Stripe expects
integer minor units, and session metadata stores amounts as plain decimal
strings without trailing zeros (``"90"``, ``"12.5"``).
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, int, str]


def to_decimal(value: Amount) -> Decimal:
    """
    Convert a value to a cent-rounded Decimal.

    Floats are converted through ``str`` so that ``0.1`` stays ``0.10``.

    Raises:
        ValueError: If the value is not a finite number
    """
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Amount) -> int:
    """Convert an amount to integer minor units."""
    return int(to_decimal(value) * 100)


def format_amount(value: Amount) -> str:
    """Render an amount without trailing zeros, e.g. ``Decimal("90.00") -> "90"``."""
    text = format(to_decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
