"""
Timestamp utilities for consistent UTC time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional, Union

SECONDS_PER_DAY = 24 * 3600


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch(value: datetime) -> float:
    """Convert datetime to Unix seconds (float, for ordered storage)."""
    return ensure_utc(value).timestamp()


def from_epoch(value: Union[int, float, str, None]) -> Optional[datetime]:
    """Convert Unix seconds (possibly stringified) back into an aware UTC datetime.

    Args:
        value: Unix timestamp in seconds, or None

    Returns:
        datetime object, or None when value is None/empty
    """
    if value is None or value == '':
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def age_in_days(start: datetime, now: datetime) -> float:
    """Elapsed days from start to now, negative if start is in the future."""
    return (ensure_utc(now) - ensure_utc(start)).total_seconds() / SECONDS_PER_DAY
