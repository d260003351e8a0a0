"""Exception hierarchy for the entitlement engine."""


class EntitlementEngineError(Exception):
    """Base exception for entitlement engine errors."""

    pass


class InvalidReceiptError(EntitlementEngineError, ValueError):
    """Raised when a billing event or receipt update cannot produce a valid Receipt.

    Covers missing identity fields (purchaseToken, productId) and physically
    impossible field combinations such as a refunded receipt in a grace period.
    """

    pass


class ReceiptNotFoundError(EntitlementEngineError):
    """Raised when a receipt is not found in the store."""

    pass


class ProductNotFoundError(EntitlementEngineError):
    """Raised when a product is not found in the Pro catalog."""

    pass
