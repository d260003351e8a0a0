"""API request/response models for the entitlement control endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from entitlement_engine.models.entitlement import Entitlement


class EntitlementResponse(BaseModel):
    """Resolved entitlement at an instant."""

    is_pro: bool = Field(..., description="Whether Pro access is granted")
    reason: str = Field(..., description="Decision reason")
    since: Optional[datetime] = Field(None, description="Purchase time of the winning receipt")
    until: Optional[datetime] = Field(None, description="Validity boundary (null = perpetual)")
    source: str = Field(..., description="Provenance of the winning receipt")
    is_valid: bool = Field(..., description="Whether Pro access holds at as_of")
    time_remaining_seconds: Optional[float] = Field(
        None, description="Seconds until the validity boundary (null if perpetual or not Pro)"
    )
    as_of_millis: int = Field(..., description="Instant of resolution (Unix millis)")

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement, as_of: datetime, as_of_millis: int) -> "EntitlementResponse":
        remaining = entitlement.time_remaining_at(as_of)
        return cls(
            is_pro=entitlement.is_pro,
            reason=entitlement.reason.value,
            since=entitlement.since,
            until=entitlement.until,
            source=entitlement.source,
            is_valid=entitlement.is_valid_at(as_of),
            time_remaining_seconds=remaining.total_seconds() if remaining is not None else None,
            as_of_millis=as_of_millis,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "is_pro": True,
                "reason": "owned",
                "since": "2025-01-15T12:00:00Z",
                "until": "2025-02-14T12:00:00Z",
                "source": "play_billing",
                "is_valid": True,
                "time_remaining_seconds": 86400.0,
                "as_of_millis": 1739534400000,
            }
        }


class IngestEventsRequest(BaseModel):
    """Batch of raw billing events (camelCase keys, millisecond timestamps)."""

    events: list[Any] = Field(..., description="Raw billing events")

    class Config:
        json_schema_extra = {
            "example": {
                "events": [
                    {
                        "purchaseToken": "token_abc123",
                        "productId": "mindtrainer_pro_monthly",
                        "purchaseState": "PURCHASED",
                        "purchaseTime": 1736942400000,
                        "expiryTimeMillis": 1739534400000,
                        "autoRenewing": True,
                        "source": "play_billing",
                    }
                ]
            }
        }


class IngestEventsResponse(BaseModel):
    """Response after ingesting raw billing events."""

    accepted: int = Field(..., description="Events normalized into receipts")
    rejected: int = Field(..., description="Events dropped as invalid")
    entitlement: EntitlementResponse = Field(..., description="Entitlement after ingestion")


class BillingEventRequest(BaseModel):
    """Typed billing event."""

    type: str = Field(..., description="purchase_completed, purchase_restored, purchase_cancelled, subscription_expired")
    purchase: Optional[dict[str, Any]] = Field(None, description="Raw purchase for purchase events")
    purchaseToken: Optional[str] = Field(None, description="Purchase token for cancel events")

    class Config:
        json_schema_extra = {
            "example": {
                "type": "purchase_cancelled",
                "purchaseToken": "token_abc123",
            }
        }


class BillingEventResponse(BaseModel):
    """Response after applying a typed billing event."""

    event_type: str = Field(..., description="Event type applied")
    receipt: Optional[dict[str, Any]] = Field(None, description="Receipt saved by the event")
    entitlement: EntitlementResponse = Field(..., description="Entitlement after the event")


class ReceiptListResponse(BaseModel):
    """All stored receipts."""

    receipts: list[dict[str, Any]] = Field(..., description="Stored receipts")
    count: int = Field(..., description="Number of receipts")


class AdvanceTimeRequest(BaseModel):
    """Request to advance virtual time."""

    days: Optional[int] = Field(None, ge=0, description="Days to advance")
    hours: Optional[int] = Field(None, ge=0, description="Hours to advance")
    minutes: Optional[int] = Field(None, ge=0, description="Minutes to advance")
    seconds: Optional[int] = Field(None, ge=0, description="Seconds to advance")

    class Config:
        json_schema_extra = {
            "example": {
                "days": 30,
                "hours": 0,
                "minutes": 0,
            }
        }


class AdvanceTimeResponse(BaseModel):
    """Response after moving virtual time."""

    previous_time_millis: int = Field(..., description="Previous virtual time")
    current_time_millis: int = Field(..., description="New virtual time")
    advanced_by_millis: int = Field(..., description="Time moved in milliseconds")
    entitlement: EntitlementResponse = Field(..., description="Entitlement at the new time")
    message: str = Field(..., description="Success message")


class ResetResponse(BaseModel):
    """Response after resetting engine state."""

    receipts_deleted: int = Field(..., description="Number of receipts deleted")
    time_reset: bool = Field(..., description="Whether virtual time was reset")
    message: str = Field(..., description="Success message")

    class Config:
        json_schema_extra = {
            "example": {
                "receipts_deleted": 3,
                "time_reset": True,
                "message": "Engine state reset successfully",
            }
        }
