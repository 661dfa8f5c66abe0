"""
Naive-UTC time helpers.

All escrow timestamps are stored as naive UTC datetimes (DateTime(timezone=False)).
Deadlines (expiresAt, inspectionDeadline) are compared against get_naive_utc_now(),
so every value written must go through these helpers.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Aware values are shifted to UTC before the tzinfo is dropped; naive
    values are assumed to already be UTC and pass through. None stays None.
    """
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def get_naive_utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_from_now(days: int, now: Optional[datetime] = None) -> datetime:
    """Naive UTC deadline `days` days after `now` (defaults to the current time)"""
    base = ensure_naive_datetime(now) or get_naive_utc_now()
    return base + timedelta(days=days)
