"""
Fixed-point credit arithmetic.

Credits carry four fractional digits. Inside the ledger every amount is an
integer count of 0.0001-credit units; Decimal text is produced only where
amounts leave the ledger (storage columns, API results, CLI output).
"""

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CREDIT_SCALE = 10000
CREDIT_QUANTUM = Decimal("0.0001")
ZERO_CREDIT = Decimal("0.0000")

Number = Union[int, float, str, Decimal]


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("credit amounts cannot be booleans")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr gives the shortest string that round-trips, so 0.1 stays 0.1
        return Decimal(repr(value))
    return Decimal(str(value).strip())


def round_credit(value: Number) -> Decimal:
    """Round a credit amount to four decimal places.

    Non-finite input rounds to zero, and so does any magnitude smaller than
    one unit, which also folds ``-0.0000`` into ``0.0000``.
    """
    try:
        amount = _to_decimal(value)
    except (InvalidOperation, ValueError):
        return ZERO_CREDIT
    if not amount.is_finite():
        return ZERO_CREDIT
    rounded = amount.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
    if abs(rounded) < CREDIT_QUANTUM:
        return ZERO_CREDIT
    return rounded


def to_units(value: Number) -> int:
    """Convert a credit amount to integer units of 0.0001."""
    return int(round_credit(value) * CREDIT_SCALE)


def from_units(units: int) -> Decimal:
    """Convert integer units back to a four-digit Decimal."""
    return round_credit(Decimal(units) / CREDIT_SCALE)


def format_units(units: int) -> str:
    """Render units as decimal text with exactly four fractional digits."""
    return f"{from_units(units):.4f}"


def format_credit(value: Number) -> str:
    return f"{round_credit(value):.4f}"


def parse_units(text: str) -> int:
    """Parse stored decimal text (e.g. ``"12.5000"``) into units."""
    return to_units(Decimal(text))


def normalize_token_count(value) -> int:
    """Coerce a reported token count to a non-negative integer, rounding up."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric) or numeric <= 0:
        return 0
    return math.ceil(numeric)
