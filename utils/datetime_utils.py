"""
Datetime utilities for consistent timezone handling across the application.
All datetime operations should use timezone-aware UTC datetimes.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(iso_string: str) -> datetime:
    """
    Parse ISO format datetime string to timezone-aware datetime.
    Handles both 'Z' suffix and '+00:00' timezone formats.

    Args:
        iso_string: ISO format datetime string

    Returns:
        Timezone-aware datetime object

    Raises:
        ValueError: If datetime string cannot be parsed
    """
    normalized = iso_string.replace("Z", "+00:00")

    try:
        return ensure_aware(datetime.fromisoformat(normalized))
    except ValueError as e:
        raise ValueError(f"Invalid datetime string: {iso_string}") from e


def to_iso_string(dt: datetime) -> str:
    """
    Convert datetime to a UTC ISO format string.

    The same instant always renders to the same string, which lets equality
    filters on timestamp columns match regardless of the input timezone.
    """
    return ensure_aware(dt).isoformat()


def seconds_between(later: datetime, earlier: datetime) -> int:
    """Whole seconds from earlier to later, truncated toward zero."""
    return int((ensure_aware(later) - ensure_aware(earlier)).total_seconds())


def default_window(
    start: Optional[datetime],
    end: Optional[datetime],
    days: int,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    """Fill a missing window bound with now and now + days."""
    now = ensure_aware(now) if now else utc_now()
    window_start = ensure_aware(start) if start else now
    window_end = ensure_aware(end) if end else now + timedelta(days=days)
    return window_start, window_end
