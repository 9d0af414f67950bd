"""
Datetime helper utilities to ensure consistent timezone handling across the application.

CRITICAL: All trade, ledger and outbox timestamps are stored as timezone-naive UTC
(DateTime(timezone=False)). Deadline comparisons done in SQL only work when every
value written and every cutoff bound follows that convention.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def get_naive_utc_now() -> datetime:
    """
    Get current UTC time as naive datetime.

    Example:
        >>> now = get_naive_utc_now()
        >>> assert now.tzinfo is None
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def deadline_from_now(delta: Optional[timedelta], now: Optional[datetime] = None) -> Optional[datetime]:
    """Naive UTC deadline ``delta`` after ``now``; None when the status has no deadline"""
    if delta is None:
        return None
    base = ensure_naive_datetime(now) if now is not None else get_naive_utc_now()
    return base + delta
