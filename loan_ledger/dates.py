"""
Date Utilities Module

The "5th of next month" due-date rule plus ISO-8601 helpers. Due dates are
calendar days; timestamps are timezone-aware UTC datetimes.
"""

from datetime import date, datetime, timezone
from typing import Optional, Union

DUE_DAY_OF_MONTH = 5

DateLike = Union[date, datetime, str]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[datetime, str]) -> datetime:
    """
    Parse an ISO-8601 timestamp. Naive values are taken to be UTC.

    Accepts the trailing "Z" that JavaScript clients send.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_day(value: DateLike) -> date:
    """Reduce a date, datetime or ISO string to its calendar day"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        return parse_timestamp(text).date()
    raise ValueError(f"Unsupported date value: {value!r}")


def compute_due_date(start_date: DateLike) -> date:
    """
    Due date for a loan starting on `start_date`.

    Always the 5th of the calendar month after the start month, whatever day
    the loan starts on. No grace period, no weekend or holiday adjustment.

    Args:
        start_date: Loan start (date, datetime or ISO string)

    Returns:
        Due date as a calendar day
    """
    start = to_day(start_date)
    # 1-based current month doubles as the 0-based index of the next month
    month = start.month
    year = start.year + month // 12
    month = month % 12 + 1
    return date(year, month, DUE_DAY_OF_MONTH)


def is_past_due(due_date: DateLike, now: Optional[datetime] = None) -> bool:
    """True once the calendar day of `now` is strictly after the due date"""
    current = to_day(now or utcnow())
    return current > to_day(due_date)
