"""Pydantic models for receipts, entitlements, configuration and the API."""

# Domain models
from .receipt import (
    AWAITING_RENEWAL_SENTINEL,
    AccountState,
    PurchaseState,
    Receipt,
)
from .entitlement import (
    Entitlement,
    EntitlementReason,
)

# Configuration models
from .settings import (
    EngineSettings,
    ProProductDefinition,
    StoreSettings,
    WatcherSettings,
)

# API models (control API)
from .api import (
    AdvanceTimeRequest,
    AdvanceTimeResponse,
    BillingEventRequest,
    BillingEventResponse,
    EntitlementResponse,
    IngestEventsRequest,
    IngestEventsResponse,
    ReceiptListResponse,
    ResetResponse,
)

__all__ = [
    # Domain
    "AWAITING_RENEWAL_SENTINEL",
    "AccountState",
    "PurchaseState",
    "Receipt",
    "Entitlement",
    "EntitlementReason",
    # Configuration
    "EngineSettings",
    "ProProductDefinition",
    "StoreSettings",
    "WatcherSettings",
    # API
    "AdvanceTimeRequest",
    "AdvanceTimeResponse",
    "BillingEventRequest",
    "BillingEventResponse",
    "EntitlementResponse",
    "IngestEventsRequest",
    "IngestEventsResponse",
    "ReceiptListResponse",
    "ResetResponse",
]
