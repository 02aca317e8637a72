"""
Time helpers shared by the ledgers.
All persisted timestamps are UTC; naive values are read as UTC.
"""
from datetime import date, datetime, timezone
from typing import Optional

# A "month" for schedule purposes is a fixed 30-day block
DAYS_PER_MONTH = 30


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Return ``dt`` as a timezone-aware UTC datetime.

    SQLite hands timestamps back without tzinfo, so naive values are assumed
    to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def months_between(start: datetime, end: datetime) -> int:
    """Whole 30-day months elapsed from ``start`` to ``end``."""
    delta = as_utc(end) - as_utc(start)
    return delta.days // DAYS_PER_MONTH


def days_until(target: date, today: Optional[date] = None) -> int:
    """Signed day count; negative when ``target`` is already past."""
    today = today or utcnow().date()
    return (target - today).days
