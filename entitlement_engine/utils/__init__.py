"""Utility functions and helpers for the engine."""

from entitlement_engine.utils.billing_period import (
    billing_period_to_timedelta,
    parse_billing_period,
    validate_billing_period,
)
from entitlement_engine.utils.timestamps import (
    EPOCH,
    datetime_to_millis,
    ensure_utc,
    millis_to_datetime,
    parse_millis,
    utc_now,
)

__all__ = [
    # Billing period parsing
    "parse_billing_period",
    "billing_period_to_timedelta",
    "validate_billing_period",
    # Timestamps
    "EPOCH",
    "utc_now",
    "ensure_utc",
    "millis_to_datetime",
    "datetime_to_millis",
    "parse_millis",
]
