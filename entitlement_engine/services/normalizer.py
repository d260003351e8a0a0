"""Receipt normalization - raw billing events to Receipt values.

Billing adapters deliver untyped key/value maps (camelCase keys, millisecond
timestamps, loosely typed flags). This module turns them into validated,
immutable Receipts.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError

from entitlement_engine.errors import InvalidReceiptError
from entitlement_engine.logging_config import get_logger, short_token
from entitlement_engine.models.receipt import (
    AWAITING_RENEWAL_SENTINEL,
    AccountState,
    PurchaseState,
    Receipt,
)
from entitlement_engine.utils.timestamps import EPOCH, millis_to_datetime, parse_millis

logger = get_logger(__name__)

_PURCHASE_STATES: dict[str, PurchaseState] = {
    "purchased": PurchaseState.PURCHASED,
    "1": PurchaseState.PURCHASED,
    "pending": PurchaseState.PENDING,
    "0": PurchaseState.PENDING,
    "refunded": PurchaseState.REFUNDED,
    "revoked": PurchaseState.REFUNDED,
    "cancelled": PurchaseState.REFUNDED,
    "canceled": PurchaseState.REFUNDED,
    "2": PurchaseState.REFUNDED,
}

_ACCOUNT_STATES: dict[str, AccountState] = {
    "ACTIVE": AccountState.ACTIVE,
    "PAUSED": AccountState.PAUSED,
    "ON_HOLD": AccountState.ON_HOLD,
    "CANCELED": AccountState.CANCELED,
    "CANCELLED": AccountState.CANCELED,
}

# Legacy account state strings that signal a grace period rather than a state
_GRACE_ACCOUNT_STATES = {"IN_GRACE", "IN_GRACE_PERIOD"}


def normalize_purchase_state(raw: Any) -> PurchaseState:
    """Normalize a raw purchase state (string or Play Billing int code).

    Unknown values normalize to UNSPECIFIED.

    Examples:
        >>> normalize_purchase_state("PURCHASED")
        <PurchaseState.PURCHASED: 'purchased'>

        >>> normalize_purchase_state(2)
        <PurchaseState.REFUNDED: 'refunded'>
    """
    if raw is None or isinstance(raw, bool):
        return PurchaseState.UNSPECIFIED
    return _PURCHASE_STATES.get(str(raw).strip().lower(), PurchaseState.UNSPECIFIED)


def parse_expiry_time(raw: Any) -> Optional[datetime]:
    """Parse expiryTimeMillis.

    - absent, malformed or negative: None (perpetual)
    - exactly zero: AWAITING_RENEWAL_SENTINEL
    - positive: UTC datetime
    """
    millis = parse_millis(raw)
    if millis is None or millis < 0:
        return None
    if millis == 0:
        return AWAITING_RENEWAL_SENTINEL
    return _to_datetime(millis)


def _parse_boundary(raw: Any) -> Optional[datetime]:
    millis = parse_millis(raw)
    if millis is None or millis <= 0:
        return None
    return _to_datetime(millis)


def _to_datetime(millis: int) -> Optional[datetime]:
    try:
        return millis_to_datetime(millis)
    except OverflowError:
        return None


def _parse_flag(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() == "true"
    return raw is True


def _parse_account_state(event: Mapping[str, Any]) -> tuple[Optional[AccountState], bool]:
    """Resolve the account state and whether it signals a grace period.

    Priority: PAUSED > ON_HOLD > explicit accountState string.
    """
    account_state: Optional[AccountState] = None
    in_grace = False

    raw_state = event.get("accountState")
    if isinstance(raw_state, str):
        normalized = raw_state.strip().upper().replace("-", "_")
        if normalized in _GRACE_ACCOUNT_STATES:
            account_state = AccountState.ACTIVE
            in_grace = True
        else:
            account_state = _ACCOUNT_STATES.get(normalized)

    if _parse_flag(event.get("accountHold")) or _parse_flag(event.get("isOnHold")):
        account_state = AccountState.ON_HOLD
    if _parse_flag(event.get("isPaused")):
        account_state = AccountState.PAUSED

    return account_state, in_grace


def _require_identity(event: Mapping[str, Any], field: str) -> str:
    value = event.get(field)
    if not isinstance(value, str) or not value.strip():
        raise InvalidReceiptError(f"Billing event is missing required field '{field}'")
    return value


def normalize_receipt(
    event: Mapping[str, Any],
    default_grace_period: Optional[timedelta] = None,
) -> Receipt:
    """Convert a raw billing event into a Receipt.

    Args:
        event: Raw billing event (purchaseToken, productId, purchaseState, ...)
        default_grace_period: Grace window applied after expiry when the event
            signals a grace period without an explicit end

    Returns:
        Normalized Receipt

    Raises:
        InvalidReceiptError: If identity fields are missing or the event cannot
            produce a valid receipt
    """
    if not isinstance(event, Mapping):
        raise InvalidReceiptError(f"Billing event must be a mapping, got {type(event).__name__}")

    purchase_token = _require_identity(event, "purchaseToken")
    product_id = _require_identity(event, "productId")

    purchase_state = normalize_purchase_state(event.get("purchaseState"))

    purchase_millis = parse_millis(event.get("purchaseTime"))
    purchase_time = EPOCH
    if purchase_millis is not None and purchase_millis > 0:
        purchase_time = _to_datetime(purchase_millis) or EPOCH

    expiry_time = parse_expiry_time(event.get("expiryTimeMillis"))

    account_state, grace_from_state = _parse_account_state(event)
    is_paused = _parse_flag(event.get("isPaused"))

    is_in_grace_period = (
        grace_from_state
        or _parse_flag(event.get("isInGracePeriod"))
        or _parse_flag(event.get("inGracePeriod"))
    )
    grace_until = event.get("accountStateUntilMillis")
    if grace_until is None:
        grace_until = event.get("gracePeriodEndMillis")
    grace_period_end = _parse_boundary(grace_until)

    if is_in_grace_period and purchase_state != PurchaseState.PURCHASED:
        logger.warning(
            "grace_flag_ignored",
            purchase_token=short_token(purchase_token),
            product_id=product_id,
            purchase_state=purchase_state.value,
        )
        is_in_grace_period = False
        grace_period_end = None

    if (
        is_in_grace_period
        and grace_period_end is None
        and default_grace_period is not None
        and expiry_time is not None
        and expiry_time != AWAITING_RENEWAL_SENTINEL
    ):
        grace_period_end = expiry_time + default_grace_period

    try:
        receipt = Receipt(
            purchase_token=purchase_token,
            product_id=product_id,
            purchase_state=purchase_state,
            purchase_time=purchase_time,
            acknowledged=_parse_flag(event.get("acknowledged")),
            auto_renewing=_parse_flag(event.get("autoRenewing")),
            expiry_time=expiry_time,
            is_paused=is_paused,
            account_state=account_state,
            is_in_grace_period=is_in_grace_period,
            grace_period_end=grace_period_end,
            source=str(event.get("source") or "unknown"),
        )
    except ValidationError as e:
        raise InvalidReceiptError(f"Billing event produced an invalid receipt: {e}") from e

    logger.debug(
        "receipt_normalized",
        purchase_token=short_token(purchase_token),
        product_id=product_id,
        purchase_state=purchase_state.value,
        expiry_time=expiry_time.isoformat() if expiry_time else None,
        auto_renewing=receipt.auto_renewing,
        account_state=account_state.value if account_state else None,
    )
    return receipt
