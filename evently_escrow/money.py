"""
Fixed-point money primitives.

Amounts are plain ``int`` values in the smallest unit of the event currency
(for USDC, 1 unit = 0.000001). Floating point never touches an amount.
Results are range-checked against the signed 64-bit column the ledger
stores them in.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Union

from .utils.exceptions import AmountOverflowError, InvalidAmountError, NegativeAmountError

MAX_AMOUNT = 2**63 - 1


def ensure_amount(value: Any, field: str = "amount") -> int:
    """
    Validate that a value is a storable amount.

    Args:
        value: Candidate amount
        field: Name used in error messages

    Returns:
        The value unchanged

    Raises:
        InvalidAmountError: If the value is not an integer
        NegativeAmountError: If the value is below zero
        AmountOverflowError: If the value exceeds MAX_AMOUNT
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(
            f"{field} must be an integer amount in minor units, got {value!r}",
            details={"field": field},
        )
    if value < 0:
        raise NegativeAmountError(f"{field} must not be negative: {value}", details={"field": field})
    if value > MAX_AMOUNT:
        raise AmountOverflowError(f"{field} exceeds maximum amount: {value}", details={"field": field})
    return value


def add(*amounts: int) -> int:
    """Checked sum of amounts."""
    total = 0
    for amount in amounts:
        total += ensure_amount(amount)
    return ensure_amount(total, "sum")


def subtract(a: int, b: int) -> int:
    """Checked difference; the result must stay non-negative."""
    ensure_amount(a)
    ensure_amount(b)
    if b > a:
        raise NegativeAmountError(f"Cannot subtract {b} from {a}")
    return a - b


def multiply(amount: int, factor: int) -> int:
    """Checked product of an amount and a non-negative integer factor."""
    ensure_amount(amount)
    ensure_amount(factor, "factor")
    return ensure_amount(amount * factor, "product")


def validate_percentage(percentage: Any) -> int:
    """Return the percentage if it is an integer in [0, 100]."""
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise InvalidAmountError(f"percentage must be an integer, got {percentage!r}")
    if not 0 <= percentage <= 100:
        raise InvalidAmountError(f"percentage must be between 0 and 100, got {percentage}")
    return percentage


def apply_percentage(pool: int, percentage: int) -> int:
    """Share of a pool, rounded down: floor(pool * percentage / 100)."""
    ensure_amount(pool, "pool")
    validate_percentage(percentage)
    return (pool * percentage) // 100


def pro_rata(total: int, part: int, whole: int) -> int:
    """
    Proportional slice of a total, rounded down.

    Returns floor(total * part / whole), or 0 when whole is 0. The rounding
    remainder is left with the caller.
    """
    ensure_amount(total, "total")
    ensure_amount(part, "part")
    ensure_amount(whole, "whole")
    if part > whole:
        raise InvalidAmountError(f"part {part} exceeds whole {whole}")
    if whole == 0:
        return 0
    return (total * part) // whole


def to_minor_units(value: Union[Decimal, str, int], decimals: int) -> int:
    """
    Convert a display amount such as "12.50" into minor units.

    Raises:
        InvalidAmountError: If the value is malformed or has more fractional
            digits than the currency supports
    """
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Malformed amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmountError(f"Malformed amount: {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidAmountError(
            f"Amount {value} has more than {decimals} fractional digits",
            details={"decimals": decimals},
        )
    return ensure_amount(int(scaled))


def from_minor_units(amount: int, decimals: int) -> Decimal:
    """Convert minor units back into a display Decimal."""
    ensure_amount(amount)
    return Decimal(amount).scaleb(-decimals)


def format_amount(amount: int, decimals: int, currency: str) -> str:
    """Human readable amount, e.g. '12.500000 USDC'."""
    quantum = Decimal(1).scaleb(-decimals)
    return f"{from_minor_units(amount, decimals).quantize(quantum)} {currency}"
