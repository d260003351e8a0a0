"""Timestamp helpers.

Billing platforms report instants as Unix milliseconds; the engine works with
timezone-aware UTC datetimes. These helpers convert between the two.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Get the current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    Naive datetimes are assumed to already be in UTC.

    Args:
        value: Datetime to normalize

    Returns:
        Aware datetime in UTC

    Raises:
        TypeError: If value is not a datetime
    """
    if not isinstance(value, datetime):
        raise TypeError(f"Expected datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def millis_to_datetime(millis: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime.

    Examples:
        >>> millis_to_datetime(0)
        datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    return EPOCH + timedelta(milliseconds=millis)


def datetime_to_millis(value: datetime) -> int:
    """Convert a datetime to Unix milliseconds."""
    return (ensure_utc(value) - EPOCH) // timedelta(milliseconds=1)


def parse_millis(raw: Any) -> Optional[int]:
    """Parse a raw millisecond timestamp from an untyped event field.

    Accepts ints, floats and numeric strings. Booleans and anything
    unparseable yield None.

    Args:
        raw: Raw field value

    Returns:
        Milliseconds as int, or None if the value is absent or malformed
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        try:
            return int(raw)
        except (ValueError, OverflowError):
            return None
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            try:
                return int(float(text))
            except (ValueError, OverflowError):
                return None
    return None
