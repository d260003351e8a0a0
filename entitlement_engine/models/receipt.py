"""Receipt model - one observed purchase/subscription state from the billing platform.

Receipts are immutable. Renewals, pauses and refunds produce new Receipt
values through named transitions.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from entitlement_engine.errors import InvalidReceiptError
from entitlement_engine.utils.timestamps import EPOCH, ensure_utc

# An expiry of exactly epoch zero marks a subscription that has not yet been
# renewed for the first time. It is neither owned nor expired.
AWAITING_RENEWAL_SENTINEL = EPOCH


class PurchaseState(str, Enum):
    """Normalized purchase state."""

    PURCHASED = "purchased"
    PENDING = "pending"
    REFUNDED = "refunded"
    UNSPECIFIED = "unspecified"


class AccountState(str, Enum):
    """Subscription account state reported by the billing platform."""

    ACTIVE = "active"
    PAUSED = "paused"
    ON_HOLD = "on_hold"
    CANCELED = "canceled"


class Receipt(BaseModel):
    """Immutable, normalized record of one purchase/subscription event."""

    purchase_token: str = Field(..., min_length=1, description="Purchase token (identity)")
    product_id: str = Field(..., min_length=1, description="Product ID (identity)")
    purchase_state: PurchaseState = Field(
        default=PurchaseState.UNSPECIFIED, description="Normalized purchase state"
    )
    purchase_time: datetime = Field(..., description="Purchase time (UTC)")
    acknowledged: bool = Field(default=False, description="Whether the purchase was acknowledged")
    auto_renewing: bool = Field(default=False, description="Whether the subscription auto-renews")

    # None means perpetual; AWAITING_RENEWAL_SENTINEL means awaiting first renewal
    expiry_time: Optional[datetime] = Field(None, description="Expiry time (UTC)")

    # Pause and account state
    is_paused: bool = Field(default=False, description="Whether the subscription is paused")
    account_state: Optional[AccountState] = Field(None, description="Account state")

    # Grace period
    is_in_grace_period: bool = Field(default=False, description="Whether in payment grace period")
    grace_period_end: Optional[datetime] = Field(None, description="Grace period end (UTC)")

    source: str = Field(default="unknown", description="Billing channel that produced the receipt")

    @field_validator("purchase_time", "expiry_time", "grace_period_end")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_consistency(self) -> "Receipt":
        if self.is_in_grace_period and self.purchase_state != PurchaseState.PURCHASED:
            raise ValueError(
                f"A {self.purchase_state.value} receipt cannot be in a grace period"
            )
        return self

    @property
    def key(self) -> tuple[str, str]:
        """Identity key (product_id, purchase_token)."""
        return (self.product_id, self.purchase_token)

    @property
    def is_perpetual(self) -> bool:
        """Whether the receipt never expires."""
        return self.expiry_time is None

    @property
    def awaiting_first_renewal(self) -> bool:
        """Whether the expiry carries the awaiting-first-renewal sentinel."""
        return self.expiry_time == AWAITING_RENEWAL_SENTINEL

    @property
    def paused(self) -> bool:
        """Whether either pause signal is set."""
        return self.is_paused or self.account_state == AccountState.PAUSED

    def copy_with(self, **changes: Any) -> "Receipt":
        """Produce a new receipt with some fields replaced.

        The result is fully re-validated; unrelated fields are carried over.

        Args:
            **changes: Field names and their new values

        Returns:
            New Receipt

        Raises:
            InvalidReceiptError: If a field name is unknown or the result is invalid
        """
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise InvalidReceiptError(f"Unknown receipt fields: {sorted(unknown)}")

        data = self.model_dump()
        data.update(changes)
        try:
            return type(self)(**data)
        except ValidationError as e:
            raise InvalidReceiptError(f"Invalid receipt update: {e}") from e

    def _transition(self, name: str, **changes: Any) -> "Receipt":
        from entitlement_engine.state_logger import log_receipt_transition

        updated = self.copy_with(**changes)
        log_receipt_transition(
            purchase_token=self.purchase_token,
            product_id=self.product_id,
            transition=name,
            changes=changes,
        )
        return updated

    def with_renewal(
        self, new_expiry: Optional[datetime], new_purchase_time: Optional[datetime] = None
    ) -> "Receipt":
        """Renew the subscription with a new expiry.

        Clears any grace period and account hold.

        Args:
            new_expiry: New expiry time (None for perpetual)
            new_purchase_time: Purchase time of the renewal (defaults to current)

        Raises:
            InvalidReceiptError: If the receipt was refunded or the new expiry is
                not after the purchase time
        """
        if self.purchase_state == PurchaseState.REFUNDED:
            raise InvalidReceiptError("A refunded receipt cannot be renewed")

        purchase_time = (
            ensure_utc(new_purchase_time) if new_purchase_time is not None else self.purchase_time
        )
        if new_expiry is not None and ensure_utc(new_expiry) <= purchase_time:
            raise InvalidReceiptError(
                f"Renewal expiry {new_expiry.isoformat()} must be after purchase time "
                f"{purchase_time.isoformat()}"
            )

        account_state = self.account_state
        if account_state == AccountState.ON_HOLD:
            account_state = AccountState.ACTIVE

        return self._transition(
            "renewal",
            expiry_time=new_expiry,
            purchase_time=purchase_time,
            purchase_state=PurchaseState.PURCHASED,
            is_in_grace_period=False,
            grace_period_end=None,
            account_state=account_state,
        )

    def with_pause_state(self, paused: bool) -> "Receipt":
        """Pause or resume the subscription."""
        return self._transition(
            "pause" if paused else "resume",
            is_paused=paused,
            account_state=AccountState.PAUSED if paused else AccountState.ACTIVE,
        )

    def with_account_state(self, account_state: Optional[AccountState]) -> "Receipt":
        """Replace the account state, keeping the pause flag consistent with it."""
        return self._transition(
            "account_state",
            account_state=account_state,
            is_paused=account_state == AccountState.PAUSED,
        )

    def with_grace_period(self, grace_period_end: Optional[datetime]) -> "Receipt":
        """Enter a payment grace period ending at grace_period_end.

        Raises:
            InvalidReceiptError: If the receipt is not in the purchased state
        """
        return self._transition(
            "grace_period",
            is_in_grace_period=True,
            grace_period_end=grace_period_end,
        )

    def with_refund(self) -> "Receipt":
        """Refund or revoke the purchase. A refunded receipt never grants access."""
        return self._transition(
            "refund",
            purchase_state=PurchaseState.REFUNDED,
            is_in_grace_period=False,
            grace_period_end=None,
            auto_renewing=False,
        )

    def with_acknowledged(self) -> "Receipt":
        """Mark the purchase as acknowledged."""
        if self.acknowledged:
            return self
        return self._transition("acknowledge", acknowledged=True)

    def with_auto_renewing(self, auto_renewing: bool) -> "Receipt":
        """Turn auto-renewal on or off."""
        if self.auto_renewing == auto_renewing:
            return self
        return self._transition("auto_renewing", auto_renewing=auto_renewing)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by persistent stores."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Receipt":
        """Rebuild a receipt from its to_dict() representation.

        Raises:
            InvalidReceiptError: If the data does not describe a valid receipt
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidReceiptError(f"Invalid stored receipt: {e}") from e

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "purchase_token": "token_abc123...",
                "product_id": "mindtrainer_pro_monthly",
                "purchase_state": "purchased",
                "purchase_time": "2025-01-15T12:00:00Z",
                "acknowledged": True,
                "auto_renewing": True,
                "expiry_time": "2025-02-14T12:00:00Z",
                "is_paused": False,
                "account_state": "active",
                "is_in_grace_period": False,
                "grace_period_end": None,
                "source": "play_billing",
            }
        }
