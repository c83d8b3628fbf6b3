"""
Datetime utility functions for handling timezone-aware datetimes.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

# A zero-argument callable returning the current aware UTC datetime.
# Services take one so tests can pin "now" without patching.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Return the current datetime in UTC timezone.

    This is the default ``Clock`` for every service.

    Returns:
        A timezone-aware datetime object representing the current time in UTC.
    """
    return datetime.now(timezone.utc)


def ensure_timezone_aware(dt: Optional[datetime]) -> datetime:
    """
    Ensure a datetime object is timezone-aware (UTC).
    SQLite may return timezone-naive datetimes even when stored as timezone-aware.

    Args:
        dt: The datetime to ensure is timezone-aware

    Returns:
        A timezone-aware datetime object in UTC

    Raises:
        ValueError: If dt is None
    """
    if dt is None:
        raise ValueError("datetime cannot be None")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds from ``now`` until ``moment``, floored at zero."""
    delta = ensure_timezone_aware(moment) - ensure_timezone_aware(now)
    return max(0, int(delta.total_seconds()))
