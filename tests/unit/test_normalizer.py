"""Unit tests for billing event normalization."""
from datetime import datetime, timedelta, timezone

import pytest

from entitlement_engine.errors import InvalidReceiptError
from entitlement_engine.models.receipt import (
    AWAITING_RENEWAL_SENTINEL,
    AccountState,
    PurchaseState,
)
from entitlement_engine.services.normalizer import (
    normalize_purchase_state,
    normalize_receipt,
    parse_expiry_time,
)
from entitlement_engine.utils.timestamps import EPOCH

T0_MILLIS = 1735689600000  # 2025-01-01T00:00:00Z
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
DAY_MILLIS = 24 * 60 * 60 * 1000


@pytest.fixture
def event():
    """Raw Play Billing purchase event."""
    return {
        "purchaseToken": "token_abc123xyz789_long_token",
        "productId": "mindtrainer_pro_monthly",
        "purchaseState": "PURCHASED",
        "purchaseTime": T0_MILLIS,
        "expiryTimeMillis": T0_MILLIS + 30 * DAY_MILLIS,
        "acknowledged": True,
        "autoRenewing": True,
        "source": "play_billing",
    }


class TestPurchaseState:
    """Test purchase state normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("PURCHASED", PurchaseState.PURCHASED),
            ("purchased", PurchaseState.PURCHASED),
            (1, PurchaseState.PURCHASED),
            ("0", PurchaseState.PENDING),
            ("Pending", PurchaseState.PENDING),
            (2, PurchaseState.REFUNDED),
            ("REVOKED", PurchaseState.REFUNDED),
            ("cancelled", PurchaseState.REFUNDED),
            ("canceled", PurchaseState.REFUNDED),
            ("bogus", PurchaseState.UNSPECIFIED),
            (None, PurchaseState.UNSPECIFIED),
            (True, PurchaseState.UNSPECIFIED),
        ],
    )
    def test_normalize_purchase_state(self, raw, expected):
        assert normalize_purchase_state(raw) == expected


class TestExpiryTime:
    """Test expiry parsing edge cases."""

    def test_missing_expiry_is_perpetual(self):
        assert parse_expiry_time(None) is None

    def test_negative_expiry_is_perpetual(self):
        assert parse_expiry_time(-1) is None

    def test_zero_expiry_is_sentinel(self):
        assert parse_expiry_time(0) == AWAITING_RENEWAL_SENTINEL

    def test_malformed_expiry_is_perpetual(self):
        assert parse_expiry_time("not-a-number") is None

    def test_string_millis(self):
        assert parse_expiry_time(str(T0_MILLIS)) == T0

    def test_float_millis(self):
        assert parse_expiry_time(float(T0_MILLIS)) == T0


class TestNormalizeReceipt:
    """Test full event normalization."""

    def test_basic_event(self, event):
        receipt = normalize_receipt(event)

        assert receipt.purchase_token == "token_abc123xyz789_long_token"
        assert receipt.product_id == "mindtrainer_pro_monthly"
        assert receipt.purchase_state == PurchaseState.PURCHASED
        assert receipt.purchase_time == T0
        assert receipt.expiry_time == T0 + timedelta(days=30)
        assert receipt.acknowledged is True
        assert receipt.auto_renewing is True
        assert receipt.is_paused is False
        assert receipt.account_state is None
        assert receipt.is_in_grace_period is False
        assert receipt.source == "play_billing"

    def test_defaults_for_missing_optional_fields(self):
        receipt = normalize_receipt({"purchaseToken": "t", "productId": "p"})

        assert receipt.purchase_state == PurchaseState.UNSPECIFIED
        assert receipt.purchase_time == EPOCH
        assert receipt.expiry_time is None
        assert receipt.auto_renewing is False
        assert receipt.source == "unknown"

    @pytest.mark.parametrize("field", ["purchaseToken", "productId"])
    def test_missing_identity_raises(self, event, field):
        del event[field]
        with pytest.raises(InvalidReceiptError, match=field):
            normalize_receipt(event)

    def test_blank_identity_raises(self, event):
        event["productId"] = "   "
        with pytest.raises(InvalidReceiptError):
            normalize_receipt(event)

    def test_non_mapping_raises(self):
        with pytest.raises(InvalidReceiptError):
            normalize_receipt(["not", "a", "dict"])

    def test_string_flags(self, event):
        event["autoRenewing"] = "false"
        event["acknowledged"] = "true"
        receipt = normalize_receipt(event)
        assert receipt.auto_renewing is False
        assert receipt.acknowledged is True

    def test_zero_expiry_awaits_first_renewal(self, event):
        event["expiryTimeMillis"] = 0
        receipt = normalize_receipt(event)
        assert receipt.awaiting_first_renewal is True


class TestAccountState:
    """Test pause, hold and grace signals."""

    def test_is_paused_sets_paused_state(self, event):
        event["isPaused"] = True
        receipt = normalize_receipt(event)
        assert receipt.is_paused is True
        assert receipt.account_state == AccountState.PAUSED
        assert receipt.paused is True

    def test_account_state_string(self, event):
        event["accountState"] = "canceled"
        assert normalize_receipt(event).account_state == AccountState.CANCELED

    def test_account_hold_flag(self, event):
        event["accountHold"] = True
        assert normalize_receipt(event).account_state == AccountState.ON_HOLD

    def test_pause_beats_hold(self, event):
        event["isOnHold"] = "true"
        event["isPaused"] = "true"
        assert normalize_receipt(event).account_state == AccountState.PAUSED

    def test_in_grace_account_state(self, event):
        event["accountState"] = "in-grace"
        event["accountStateUntilMillis"] = T0_MILLIS + 33 * DAY_MILLIS
        receipt = normalize_receipt(event)

        assert receipt.account_state == AccountState.ACTIVE
        assert receipt.is_in_grace_period is True
        assert receipt.grace_period_end == T0 + timedelta(days=33)

    def test_grace_period_end_millis(self, event):
        event["isInGracePeriod"] = True
        event["gracePeriodEndMillis"] = T0_MILLIS + 37 * DAY_MILLIS
        receipt = normalize_receipt(event)
        assert receipt.grace_period_end == T0 + timedelta(days=37)

    def test_null_account_state_until_falls_back_to_grace_end(self, event):
        event["isInGracePeriod"] = True
        event["accountStateUntilMillis"] = None
        event["gracePeriodEndMillis"] = T0_MILLIS + 37 * DAY_MILLIS
        receipt = normalize_receipt(event, default_grace_period=timedelta(days=3))
        assert receipt.grace_period_end == T0 + timedelta(days=37)

    def test_default_grace_period_applied(self, event):
        event["isInGracePeriod"] = True
        receipt = normalize_receipt(event, default_grace_period=timedelta(days=3))
        assert receipt.grace_period_end == T0 + timedelta(days=33)

    def test_grace_without_end_or_default(self, event):
        event["inGracePeriod"] = True
        receipt = normalize_receipt(event)
        assert receipt.is_in_grace_period is True
        assert receipt.grace_period_end is None

    def test_grace_flag_dropped_for_refunded_event(self, event):
        event["purchaseState"] = "REFUNDED"
        event["isInGracePeriod"] = True
        event["gracePeriodEndMillis"] = T0_MILLIS + 33 * DAY_MILLIS
        receipt = normalize_receipt(event)

        assert receipt.purchase_state == PurchaseState.REFUNDED
        assert receipt.is_in_grace_period is False
        assert receipt.grace_period_end is None
