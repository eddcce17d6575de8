"""
Money Utilities Module

Decimal coercion, currency rounding and display formatting. The ledger keeps
full precision internally and only rounds at presentation boundaries.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CURRENCY_PRECISION = 2  # cents
CENT = Decimal('0.1') ** CURRENCY_PRECISION
ZERO = Decimal('0')

Amount = Union[Decimal, int, str, float]

CURRENCY_SYMBOLS = "R$€£¥"
_LEADING_SYMBOL = re.compile(r'^([+-]?)\s*[' + re.escape(CURRENCY_SYMBOLS) + r']')


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, optionally with a currency
            symbol or thousands separators ("R1,400.00")

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Only a leading currency symbol and whitespace are dropped
    clean_value = re.sub(r'\s+', '', _LEADING_SYMBOL.sub(r'\1', value.strip()))

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Decimal comma
            clean_value = clean_value.replace(',', '.')
        else:  # Thousands separator
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"'{value}' is not a finite amount")
    return result


def to_decimal(value: Amount) -> Decimal:
    """
    Coerce an incoming amount to Decimal without losing precision.

    Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary amount")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        result = Decimal(str(value))
        if not result.is_finite():
            raise ValueError(f"'{value}' is not a finite amount")
        return result
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Unsupported amount type: {type(value).__name__}")


def round_currency(value: Amount) -> Decimal:
    """Round to currency precision (2dp, half-up) for display or export"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Amount, symbol: str = "R") -> str:
    """Format for display, e.g. R1,400.00"""
    rounded = round_currency(value)
    sign = "-" if rounded < ZERO else ""
    return f"{sign}{symbol}{abs(rounded):,.{CURRENCY_PRECISION}f}"
