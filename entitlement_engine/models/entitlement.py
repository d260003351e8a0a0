"""Entitlement model - the resolved Pro access decision.

An Entitlement is a derived view recomputed from the full receipt set; it is
never persisted as the source of truth.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from entitlement_engine.utils.timestamps import ensure_utc, utc_now


class EntitlementReason(str, Enum):
    """Why the entitlement was granted or withheld."""

    OWNED = "owned"
    GRACE = "grace"
    AWAITING_RENEWAL = "awaiting_renewal"
    EXPIRED = "expired"
    NO_VALID_RECEIPTS = "no_valid_receipts"
    NONE = "none"


class Entitlement(BaseModel):
    """Resolved entitlement decision."""

    is_pro: bool = Field(default=False, description="Whether Pro access is granted")
    reason: EntitlementReason = Field(default=EntitlementReason.NONE, description="Decision reason")
    since: Optional[datetime] = Field(None, description="Purchase time of the winning receipt")
    until: Optional[datetime] = Field(
        None, description="Expiry or grace boundary of the winning receipt (None = perpetual)"
    )
    source: str = Field(default="none", description="Provenance of the winning receipt")

    @field_validator("since", "until")
    @classmethod
    def _normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @classmethod
    def none(cls) -> "Entitlement":
        """Zero value: no receipts exist or none are valid."""
        return cls()

    @classmethod
    def denied(cls, reason: EntitlementReason) -> "Entitlement":
        """Entitlement withheld for the given reason."""
        return cls(is_pro=False, reason=reason)

    @classmethod
    def granted(
        cls,
        reason: EntitlementReason,
        since: datetime,
        until: Optional[datetime],
        source: str,
    ) -> "Entitlement":
        """Entitlement granted by a winning receipt."""
        return cls(is_pro=True, reason=reason, since=since, until=until, source=source)

    def is_expired_at(self, as_of: datetime) -> bool:
        """Whether the validity window has ended at as_of.

        Perpetual entitlements never expire.
        """
        if self.until is None:
            return False
        return ensure_utc(as_of) >= self.until

    def is_valid_at(self, as_of: datetime) -> bool:
        """Whether Pro access holds at as_of."""
        return self.is_pro and not self.is_expired_at(as_of)

    def time_remaining_at(self, as_of: datetime) -> Optional[timedelta]:
        """Time left until the validity window ends.

        Returns:
            Remaining duration, or None if perpetual, not Pro, or already ended
        """
        if not self.is_pro or self.until is None:
            return None
        remaining = self.until - ensure_utc(as_of)
        if remaining <= timedelta(0):
            return None
        return remaining

    @property
    def is_expired(self) -> bool:
        """Whether the validity window has ended now."""
        return self.is_expired_at(utc_now())

    @property
    def is_valid(self) -> bool:
        """Whether Pro access holds now."""
        return self.is_valid_at(utc_now())

    @property
    def time_remaining(self) -> Optional[timedelta]:
        """Time left until the validity window ends, measured from now."""
        return self.time_remaining_at(utc_now())

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        return self.model_dump(mode="json")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "is_pro": True,
                "reason": "owned",
                "since": "2025-01-15T12:00:00Z",
                "until": "2025-02-14T12:00:00Z",
                "source": "play_billing",
            }
        }
