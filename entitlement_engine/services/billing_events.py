"""Billing event handling - applies billing adapter events to the receipt store.

Handled event types:
- purchase_completed / purchase_restored: normalize and save the purchase
- purchase_cancelled: refund the stored receipt for the purchase token
- subscription_expired: re-resolve the entitlement
"""

from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any, Optional

from entitlement_engine.errors import InvalidReceiptError, ReceiptNotFoundError
from entitlement_engine.logging_config import get_logger, short_token
from entitlement_engine.models.receipt import Receipt
from entitlement_engine.repositories.receipt_store import ReceiptStore
from entitlement_engine.services.entitlement_watcher import EntitlementWatcher
from entitlement_engine.services.normalizer import normalize_receipt
from entitlement_engine.state_logger import log_receipt_dropped

logger = get_logger(__name__)

PURCHASE_COMPLETED = "purchase_completed"
PURCHASE_RESTORED = "purchase_restored"
PURCHASE_CANCELLED = "purchase_cancelled"
SUBSCRIPTION_EXPIRED = "subscription_expired"

EVENT_TYPES = (PURCHASE_COMPLETED, PURCHASE_RESTORED, PURCHASE_CANCELLED, SUBSCRIPTION_EXPIRED)


class BillingEventHandler:
    """Routes billing events to the receipt store.

    Args:
        store: Receipt store receiving normalized receipts
        watcher: Entitlement watcher refreshed on expiry events
        default_grace_period: Grace window for events without an explicit end
    """

    def __init__(
        self,
        store: ReceiptStore,
        watcher: Optional[EntitlementWatcher] = None,
        default_grace_period: Optional[timedelta] = None,
    ) -> None:
        self._store = store
        self._watcher = watcher
        self._default_grace_period = default_grace_period

    def handle_event(self, event: Mapping[str, Any]) -> Optional[Receipt]:
        """Apply one typed billing event.

        Args:
            event: {"type": ..., "purchase": {...}} or {"type": ..., "purchaseToken": ...}

        Returns:
            The receipt saved by the event, or None if nothing was saved

        Raises:
            InvalidReceiptError: If a purchase event carries an invalid purchase
        """
        if not isinstance(event, Mapping):
            raise InvalidReceiptError(f"Billing event must be a mapping, got {type(event).__name__}")

        event_type = event.get("type")
        logger.debug("billing_event_received", event_type=event_type)

        if event_type in (PURCHASE_COMPLETED, PURCHASE_RESTORED):
            purchase = event.get("purchase")
            if not isinstance(purchase, Mapping):
                raise InvalidReceiptError(f"'{event_type}' event is missing its purchase")
            receipt = normalize_receipt(purchase, self._default_grace_period)
            self._store.save(receipt)
            logger.info(
                "purchase_recorded",
                event_type=event_type,
                product_id=receipt.product_id,
                purchase_token=short_token(receipt.purchase_token),
            )
            return receipt

        if event_type == PURCHASE_CANCELLED:
            try:
                return self.cancel_purchase(event.get("purchaseToken"))
            except ReceiptNotFoundError as e:
                logger.warning("cancel_ignored", reason=str(e))
                return None

        if event_type == SUBSCRIPTION_EXPIRED:
            if self._watcher is not None:
                self._watcher.refresh()
            return None

        logger.debug("billing_event_ignored", event_type=event_type)
        return None

    def cancel_purchase(self, purchase_token: Any) -> Receipt:
        """Refund the stored receipt carrying purchase_token.

        Raises:
            ReceiptNotFoundError: If no stored receipt has the token
        """
        if not isinstance(purchase_token, str) or not purchase_token:
            raise ReceiptNotFoundError("Cancel event carries no purchase token")

        receipt = self._store.find_by_token(purchase_token)
        if receipt is None:
            raise ReceiptNotFoundError(
                f"No receipt found with token: {short_token(purchase_token)}"
            )

        refunded = receipt.with_refund()
        self._store.save(refunded)
        return refunded

    def process_receipts(self, events: Iterable[Any]) -> list[Receipt]:
        """Normalize and save a batch of raw billing events.

        Invalid events are dropped and logged. Valid receipts are saved with a
        single store notification.

        Returns:
            Receipts that were normalized (saved or already current)
        """
        receipts: list[Receipt] = []
        for index, event in enumerate(events):
            try:
                receipts.append(normalize_receipt(event, self._default_grace_period))
            except InvalidReceiptError as e:
                log_receipt_dropped(
                    reason=str(e),
                    event_keys=event.keys() if isinstance(event, Mapping) else (),
                    index=index,
                )

        if receipts:
            self._store.save_all(receipts)
        return receipts
