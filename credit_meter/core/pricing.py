"""
Token to credit pricing.

Converts token counts into a credit cost using the global ratio.
"""

from decimal import Decimal, ROUND_CEILING
from typing import Union

from .credit_math import CREDIT_SCALE, normalize_token_count


def ratio_to_decimal(ratio: Union[int, float, Decimal]) -> Decimal:
    if isinstance(ratio, Decimal):
        return ratio
    return Decimal(repr(float(ratio)))


def calculate_cost_units(total_tokens, ratio: Union[int, float, Decimal]) -> int:
    """Calculate the credit cost of a call with conservative rounding.

    cost = ceil(max(0, tokens) * ratio), in whole credits, returned as
    integer units of 0.0001 credit. The product is computed in Decimal so that
    e.g. 30 * 0.1 is exactly 3 and does not round up to 4.

    Args:
        total_tokens: Reported or estimated token count
        ratio: Credits per token

    Returns:
        Cost in credit units, always a multiple of CREDIT_SCALE
    """
    tokens = normalize_token_count(total_tokens)
    if tokens == 0:
        return 0
    raw = Decimal(tokens) * ratio_to_decimal(ratio)
    if raw <= 0:
        return 0
    credits = int(raw.to_integral_value(rounding=ROUND_CEILING))
    return credits * CREDIT_SCALE