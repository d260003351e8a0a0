"""Receipt store - keyed storage of receipts.

Receipts are keyed by (product_id, purchase_token). Saving a receipt with an
existing key overwrites it. Stores notify listeners after their content
changes so entitlement watchers can re-resolve.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from entitlement_engine.errors import InvalidReceiptError
from entitlement_engine.logging_config import get_logger, short_token
from entitlement_engine.models.receipt import Receipt
from entitlement_engine.models.settings import StoreSettings

logger = get_logger(__name__)

ReceiptKey = Tuple[str, str]
StoreListener = Callable[[], None]


class ReceiptStore(ABC):
    """Interface for receipt storage.

    All operations are idempotent: saving the same receipt twice or removing
    a missing one leaves the store unchanged.
    """

    def __init__(self) -> None:
        self._listeners: List[StoreListener] = []
        self._listener_lock = threading.Lock()

    @abstractmethod
    def save(self, receipt: Receipt) -> None:
        """Save a receipt, overwriting any receipt with the same identity."""

    @abstractmethod
    def save_all(self, receipts: Iterable[Receipt]) -> int:
        """Save several receipts with a single change notification.

        Returns:
            Number of receipts that were new or changed
        """

    @abstractmethod
    def get(self, product_id: str, purchase_token: str) -> Optional[Receipt]:
        """Get a receipt by identity (None if not found)."""

    @abstractmethod
    def list(self) -> List[Receipt]:
        """Get all receipts."""

    @abstractmethod
    def remove(self, product_id: str, purchase_token: str) -> bool:
        """Remove a receipt by identity.

        Returns:
            True if a receipt was removed, False if it was not found
        """

    @abstractmethod
    def clear(self) -> None:
        """Remove all receipts."""

    def list_by_product(self, product_id: str) -> List[Receipt]:
        """Get all receipts for a product."""
        return [r for r in self.list() if r.product_id == product_id]

    def find_by_token(self, purchase_token: str) -> Optional[Receipt]:
        """Find a receipt by purchase token alone.

        Billing events such as cancellations only carry the token. Returns
        the most recently purchased match when tokens collide across products.
        """
        matches = [r for r in self.list() if r.purchase_token == purchase_token]
        if not matches:
            return None
        return max(matches, key=lambda r: (r.purchase_time, r.product_id))

    def count(self) -> int:
        return len(self.list())

    def add_listener(self, listener: StoreListener) -> None:
        """Register a callback invoked after the store content changes."""
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify_listeners(self) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(
                    "store_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, key: ReceiptKey) -> bool:
        product_id, purchase_token = key
        return self.get(product_id, purchase_token) is not None


class InMemoryReceiptStore(ReceiptStore):
    """Thread-safe in-memory receipt storage."""

    def __init__(self) -> None:
        super().__init__()
        self._receipts: Dict[ReceiptKey, Receipt] = {}
        self._lock = threading.RLock()

    def _persist(self, receipts: Dict[ReceiptKey, Receipt]) -> None:
        """Hook called under the lock with the mapping about to replace the current one.

        If it raises, the mutation is abandoned and the store is unchanged.
        """

    def save(self, receipt: Receipt) -> None:
        with self._lock:
            if self._receipts.get(receipt.key) == receipt:
                return
            updated = dict(self._receipts)
            updated[receipt.key] = receipt
            self._persist(updated)
            self._receipts = updated

        logger.info(
            "receipt_saved",
            product_id=receipt.product_id,
            purchase_token=short_token(receipt.purchase_token),
            purchase_state=receipt.purchase_state.value,
        )
        self._notify_listeners()

    def save_all(self, receipts: Iterable[Receipt]) -> int:
        changed = 0
        with self._lock:
            updated = dict(self._receipts)
            for receipt in receipts:
                if updated.get(receipt.key) != receipt:
                    updated[receipt.key] = receipt
                    changed += 1
            if changed:
                self._persist(updated)
                self._receipts = updated

        if changed:
            logger.info("receipts_saved", count=changed)
            self._notify_listeners()
        return changed

    def get(self, product_id: str, purchase_token: str) -> Optional[Receipt]:
        with self._lock:
            return self._receipts.get((product_id, purchase_token))

    def list(self) -> List[Receipt]:
        with self._lock:
            return list(self._receipts.values())

    def remove(self, product_id: str, purchase_token: str) -> bool:
        with self._lock:
            if (product_id, purchase_token) not in self._receipts:
                return False
            updated = dict(self._receipts)
            del updated[(product_id, purchase_token)]
            self._persist(updated)
            self._receipts = updated

        logger.info(
            "receipt_removed",
            product_id=product_id,
            purchase_token=short_token(purchase_token),
        )
        self._notify_listeners()
        return True

    def clear(self) -> None:
        """Clear all receipts from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            removed = len(self._receipts)
            self._persist({})
            self._receipts = {}

        logger.info("receipts_cleared", count=removed)
        if removed:
            self._notify_listeners()

    def count(self) -> int:
        with self._lock:
            return len(self._receipts)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(receipts={self.count()})"


class JsonFileReceiptStore(InMemoryReceiptStore):
    """Receipt store persisted to a JSON file.

    File format: {"receipts": [<Receipt.to_dict()>, ...]}. Entries that fail
    validation are skipped on load; an unreadable file starts the store empty.

    Args:
        path: Path of the JSON file (created on first write)
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return

        try:
            content = self._path.read_text(encoding="utf-8")
            data = json.loads(content) if content.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error("receipt_file_unreadable", path=str(self._path), error=str(e))
            return

        entries = data.get("receipts", []) if isinstance(data, dict) else []
        skipped = 0
        for entry in entries:
            if not isinstance(entry, dict):
                skipped += 1
                continue
            try:
                receipt = Receipt.from_dict(entry)
            except InvalidReceiptError as e:
                skipped += 1
                logger.warning("stored_receipt_skipped", path=str(self._path), error=str(e))
                continue
            self._receipts[receipt.key] = receipt

        logger.info(
            "receipts_loaded",
            path=str(self._path),
            count=len(self._receipts),
            skipped=skipped,
        )

    def _persist(self, receipts: Dict[ReceiptKey, Receipt]) -> None:
        payload = {"receipts": [r.to_dict() for r in receipts.values()]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self._path)
        except Exception as e:
            logger.error(
                "receipt_file_write_failed",
                path=str(self._path),
                error=str(e),
                error_type=type(e).__name__,
            )
            tmp_path.unlink(missing_ok=True)
            raise


def create_receipt_store(settings: Optional[StoreSettings] = None) -> ReceiptStore:
    """Build the receipt store described by the store settings."""
    settings = settings or StoreSettings()
    if settings.backend == "json":
        return JsonFileReceiptStore(settings.path)
    return InMemoryReceiptStore()
