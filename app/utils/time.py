"""
Time utilities. All persisted timestamps are naive UTC.
"""

from datetime import datetime, timedelta, timezone
from typing import List


def utcnow() -> datetime:
    """Get the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Normalize a datetime to naive UTC.

    Args:
        dt: Datetime to convert (can be naive or aware)

    Returns:
        Naive datetime in UTC
    """
    if dt.tzinfo is None:
        # Assume naive datetime is already UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def floor_to_hour(dt: datetime) -> datetime:
    """Truncate a datetime to the start of its hour."""
    return dt.replace(minute=0, second=0, microsecond=0)


def hourly_buckets(end: datetime, hours: int) -> List[datetime]:
    """
    Build the list of hour starts covering the last `hours` hours.

    Args:
        end: Reference time (the bucket containing it is the last one)
        hours: Number of buckets

    Returns:
        Hour starts in chronological order
    """
    last = floor_to_hour(end)
    return [last - timedelta(hours=offset) for offset in range(hours - 1, -1, -1)]


def format_iso(dt: datetime) -> str:
    """Format a naive UTC datetime as ISO-8601 with a Z suffix."""
    return dt.replace(microsecond=0).isoformat() + "Z"
