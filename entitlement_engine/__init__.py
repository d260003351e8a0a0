"""Pro entitlement resolution from billing receipts."""

from entitlement_engine.errors import (
    EntitlementEngineError,
    InvalidReceiptError,
    ProductNotFoundError,
    ReceiptNotFoundError,
)
from entitlement_engine.models.entitlement import Entitlement, EntitlementReason
from entitlement_engine.models.receipt import AccountState, PurchaseState, Receipt
from entitlement_engine.services.normalizer import normalize_receipt
from entitlement_engine.services.resolver import resolve

__version__ = "0.1.0"

__all__ = [
    "EntitlementEngineError",
    "InvalidReceiptError",
    "ProductNotFoundError",
    "ReceiptNotFoundError",
    "Entitlement",
    "EntitlementReason",
    "AccountState",
    "PurchaseState",
    "Receipt",
    "normalize_receipt",
    "resolve",
]
