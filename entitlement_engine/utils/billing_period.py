"""Billing period parsing utilities.

Parses the ISO 8601 duration strings used by Google Play for billing and
grace periods (P3D, P1M, P1Y) into timedeltas.
"""

import re
from datetime import timedelta

DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30  # Standard approximation for billing
DAYS_PER_YEAR = 365  # Standard approximation for billing

_PERIOD_PATTERN = re.compile(r"^(\d+)?([DWMY])$")


def parse_billing_period(period: str) -> int:
    """Parse an ISO 8601 duration string to a number of days.

    Supported formats:
    - P[n]D - days (e.g., P3D = 3 days)
    - P[n]W - weeks (e.g., P1W = 7 days)
    - P[n]M - months (e.g., P1M = 30 days)
    - P[n]Y - years (e.g., P1Y = 365 days)

    Args:
        period: ISO 8601 duration string

    Returns:
        Duration in days

    Raises:
        ValueError: If the period string is invalid or unsupported

    Examples:
        >>> parse_billing_period("P3D")
        3

        >>> parse_billing_period("P1Y")
        365
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise ValueError(f"Invalid period format: '{period}'. Must start with 'P'")

    duration_str = period[1:]
    if not duration_str:
        raise ValueError(f"Invalid period format: '{period}'. No duration specified")

    match = _PERIOD_PATTERN.match(duration_str)
    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1

    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")

    if unit == "D":
        return number
    elif unit == "W":
        return number * DAYS_PER_WEEK
    elif unit == "M":
        return number * DAYS_PER_MONTH
    else:
        return number * DAYS_PER_YEAR


def billing_period_to_timedelta(period: str) -> timedelta:
    """Convert an ISO 8601 duration string to a timedelta.

    Examples:
        >>> billing_period_to_timedelta("P3D")
        datetime.timedelta(days=3)
    """
    return timedelta(days=parse_billing_period(period))


def validate_billing_period(period: str) -> bool:
    """Check whether a string is a supported billing period."""
    try:
        parse_billing_period(period)
        return True
    except (ValueError, TypeError):
        return False
