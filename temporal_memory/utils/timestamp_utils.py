"""
Timestamp utilities for consistent time handling across the system.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

TimestampLike = Union[datetime, int, float, str, None]

DAY_SECONDS = 24 * 3600


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: TimestampLike = None) -> datetime:
    """Convert a timestamp to a timezone-aware UTC datetime.

    Args:
        timestamp: datetime, Unix seconds (milliseconds are detected), ISO-8601
            string, or None for the current time

    Returns:
        datetime object in UTC

    Raises:
        ValueError: If a string timestamp cannot be parsed
    """
    if timestamp is None:
        timestamp = time.time()

    if isinstance(timestamp, datetime):
        if timestamp.tzinfo is None:
            return timestamp.replace(tzinfo=timezone.utc)
        return timestamp.astimezone(timezone.utc)

    if isinstance(timestamp, str):
        text = timestamp.strip()
        if text.replace('.', '', 1).isdigit():
            return to_datetime(float(text))
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return to_datetime(datetime.fromisoformat(text))

    # Values this large can only be epoch milliseconds
    if timestamp > 1e11:
        timestamp = timestamp / 1000.0
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def to_optional_datetime(timestamp: TimestampLike) -> Optional[datetime]:
    """Like to_datetime, but empty values stay None."""
    if timestamp is None or (isinstance(timestamp, str) and not timestamp.strip()):
        return None
    return to_datetime(timestamp)


def to_iso(timestamp: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for metadata and LLM payloads."""
    return timestamp.isoformat() if timestamp is not None else None


def age_in_days(timestamp: datetime, reference: Optional[datetime] = None) -> float:
    """Non-negative age of a timestamp in days."""
    reference = reference or utc_now()
    return max(0.0, (reference - timestamp).total_seconds() / DAY_SECONDS)
