"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

All persisted timestamps are naive UTC (DateTime(timezone=False)). Callers that
receive timezone-aware values from outside should pass them through
ensure_naive_datetime before comparing against stored columns.
"""

from datetime import datetime, timezone
from typing import Optional


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


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def age_in_days(created_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Fractional age in days; an unknown creation time counts as brand new."""
    if created_at is None:
        return 0.0
    reference = ensure_naive_datetime(now) or get_naive_utc_now()
    return (reference - ensure_naive_datetime(created_at)).total_seconds() / 86400


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> int:
    if start is None or end is None:
        return 0
    delta = ensure_naive_datetime(end) - ensure_naive_datetime(start)
    return max(0, int(delta.total_seconds() // 60))
