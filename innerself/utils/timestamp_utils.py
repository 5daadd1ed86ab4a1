"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime] = None) -> str:
    """Convert datetime to an ISO-8601 string with timezone.

    Args:
        value: Datetime to convert (optional, uses current time if None)

    Returns:
        ISO-8601 timestamp string
    """
    if value is None:
        value = utc_now()
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp written by to_iso."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def local_today() -> str:
    """Today's date in the local calendar as YYYY-MM-DD."""
    return date.today().isoformat()


def time_of_day(value: Optional[datetime] = None) -> str:
    """Bucket the local hour into a coarse time-of-day label."""
    hour = (value or datetime.now()).hour
    if hour < 6:
        return 'late_night'
    if hour < 12:
        return 'morning'
    if hour < 17:
        return 'afternoon'
    if hour < 21:
        return 'evening'
    return 'night'
