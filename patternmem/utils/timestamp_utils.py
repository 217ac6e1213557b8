"""
Timestamp utilities for consistent UTC time handling across the system.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

SECONDS_PER_DAY = 24 * 60 * 60


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC.

    Args:
        value: datetime to normalize

    Returns:
        Aware datetime in UTC
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def age_in_days(timestamp: datetime, reference: Optional[datetime] = None) -> float:
    """Fractional days between a timestamp and a reference time.

    Args:
        timestamp: Point in time being aged
        reference: Reference time (defaults to now)

    Returns:
        Age in days; negative when the timestamp lies after the reference
    """
    reference = reference or utc_now()
    return (ensure_utc(reference) - ensure_utc(timestamp)).total_seconds() / SECONDS_PER_DAY


def to_epoch_seconds(value: Optional[datetime] = None) -> int:
    """Convert a datetime to whole Unix seconds (current time if None)."""
    value = value or utc_now()
    return int(ensure_utc(value).timestamp())


def from_epoch_seconds(seconds) -> datetime:
    """Convert Unix seconds (int, float or numeric string) to an aware UTC datetime."""
    return datetime.fromtimestamp(int(float(seconds)), tz=timezone.utc)


def day_bounds(value: datetime) -> Tuple[datetime, datetime]:
    """UTC calendar day containing ``value`` as a half-open [start, end) range."""
    start = ensure_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
