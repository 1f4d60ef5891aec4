"""
Money Helpers Module

Exact Decimal handling for every monetary value and rate in the engine.
NEVER uses float for monetary values: floats are rejected at the boundary.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from .exceptions import InvalidArgumentError


MONEY_PLACES = 2
CENT = Decimal('0.1') ** MONEY_PLACES
ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric, field_name: str = "value") -> Decimal:
    """
    Convert an inbound amount or rate to Decimal

    Args:
        value: Decimal, int or decimal string
        field_name: Name used in the error message

    Returns:
        Decimal value

    Raises:
        InvalidArgumentError: For floats, booleans, non-finite or unparseable values
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidArgumentError(
            f"{field_name} must be an exact decimal, got {type(value).__name__}"
        )

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidArgumentError(f"Cannot convert {field_name} '{value}' to Decimal")
    else:
        raise InvalidArgumentError(
            f"{field_name} must be Decimal, int or str, got {type(value).__name__}"
        )

    if not result.is_finite():
        raise InvalidArgumentError(f"{field_name} must be finite")
    return result


def round_money(value: Decimal) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def floor_at_zero(value: Decimal) -> Decimal:
    """Clamp a balance so it never goes negative"""
    return value if value > ZERO else ZERO


def money_str(value: Decimal) -> str:
    """Format for storage and event payloads"""
    return str(round_money(value))
