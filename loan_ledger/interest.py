"""
Interest Calculator Module

Computes the total repayable amount of a loan at creation and the size of an
overdue penalty. Results keep full Decimal precision; round with
currency.round_currency only when presenting them.
"""

from decimal import Decimal
from enum import Enum
from typing import Union

from .currency import Amount, ZERO, to_decimal
from .errors import InvalidInput

HUNDRED = Decimal('100')
ONE = Decimal('1')


class InterestModel(Enum):
    """How interest is charged on the principal"""
    FLAT = "FLAT"          # Single fixed fee, common in informal lending
    SIMPLE = "SIMPLE"      # Currently identical to FLAT
    COMPOUND = "COMPOUND"  # Compounds once per term unit


class TermUnit(Enum):
    """Unit of a loan's term value"""
    DAYS = "DAYS"
    WEEKS = "WEEKS"
    MONTHS = "MONTHS"


def _validate(principal: Decimal, rate: Decimal) -> None:
    if principal <= ZERO:
        raise InvalidInput("Principal must be positive", {"principal": str(principal)})
    if rate < ZERO:
        raise InvalidInput("Interest rate cannot be negative", {"rate": str(rate)})


def compute_total_repayment(
    principal: Amount,
    rate: Amount,
    model: Union[InterestModel, str],
    term_value: int = 1
) -> Decimal:
    """
    Calculate principal plus interest.

    FLAT and SIMPLE charge rate% once and ignore the term. COMPOUND charges
    rate% per term unit: principal * (1 + rate/100) ** term_value.

    Args:
        principal: Amount lent, must be positive
        rate: Interest rate as a percentage (40 means 40%)
        model: Interest model
        term_value: Number of term units (COMPOUND only)

    Returns:
        Total repayable amount, unrounded

    Raises:
        InvalidInput: principal <= 0, rate < 0 or a compound term below 1
    """
    principal = to_decimal(principal)
    rate = to_decimal(rate)
    _validate(principal, rate)

    if isinstance(model, str):
        try:
            model = InterestModel(model.upper())
        except ValueError:
            raise InvalidInput(f"Unknown interest model '{model}'")

    factor = ONE + rate / HUNDRED
    if model in (InterestModel.FLAT, InterestModel.SIMPLE):
        return principal * factor

    if int(term_value) < 1:
        raise InvalidInput("Compound interest needs a term of at least 1", {"term_value": term_value})
    return principal * factor ** int(term_value)


def compute_penalty(principal: Amount, rate: Amount) -> Decimal:
    """Overdue penalty: one more flat interest charge on the principal"""
    principal = to_decimal(principal)
    rate = to_decimal(rate)
    _validate(principal, rate)
    return principal * rate / HUNDRED
