"""Entitlement watcher - keeps a resolved entitlement current.

Responsibilities:
- Cache the last resolved Entitlement and the instant it goes stale
- Re-resolve when the receipt store changes
- Re-resolve when time crosses the next receipt boundary
- Retry the store after a failed read instead of caching the failure
- Notify subscribers when the decision changes

The watcher reads receipts from an injected ReceiptStore; it keeps no
receipt state of its own.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from entitlement_engine.logging_config import get_logger
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.receipt import Receipt
from entitlement_engine.repositories.product_catalog import ProductCatalog
from entitlement_engine.repositories.receipt_store import ReceiptStore
from entitlement_engine.services.clock import Clock
from entitlement_engine.services.resolver import evaluate_receipt, resolve
from entitlement_engine.state_logger import log_entitlement_change

logger = get_logger(__name__)

EntitlementListener = Callable[[Entitlement], None]

# Delay before a running watcher retries an unreadable store
STORE_RETRY_DELAY = timedelta(seconds=5)


class EntitlementWatcher:
    """Streaming wrapper around resolve().

    Args:
        store: Receipt store to read from and listen to
        clock: Clock providing the current instant (defaults to wall clock)
        catalog: Optional Pro catalog restricting which products count
    """

    def __init__(
        self,
        store: ReceiptStore,
        clock: Optional[Clock] = None,
        catalog: Optional[ProductCatalog] = None,
    ) -> None:
        self._store = store
        self._clock = clock or Clock()
        self._catalog = catalog

        self._lock = threading.RLock()
        # Serializes re-resolution across threads. Reentrant because a store
        # listener may fire while a refresh is reading the store.
        self._refresh_lock = threading.RLock()

        self._entitlement: Optional[Entitlement] = None
        self._stale_at: Optional[datetime] = None
        self._store_failed = False
        self._generation = 0
        self._listeners: list[EntitlementListener] = []

        self._timer: Optional[threading.Timer] = None
        self._running = False

        self._store.add_listener(self.on_store_changed)
        self._clock.add_listener(self.on_time_changed)

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def store(self) -> ReceiptStore:
        return self._store

    @property
    def stale_at(self) -> Optional[datetime]:
        """Instant at which the cached entitlement must be re-resolved."""
        with self._lock:
            return self._stale_at

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def current(self) -> Entitlement:
        """Get the current entitlement, re-resolving if the cache is empty or stale."""
        with self._lock:
            entitlement = self._entitlement
            stale = entitlement is None or self._is_stale(self._clock.now())
        if stale:
            return self.refresh()
        return entitlement

    @property
    def is_pro(self) -> bool:
        return self.current().is_pro

    def _is_stale(self, now: datetime) -> bool:
        return self._stale_at is not None and now >= self._stale_at

    def refresh(self) -> Entitlement:
        """Re-read the receipt store and resolve.

        If the store changes while a resolution is in flight, that result is
        discarded and resolution reruns against the newer receipt set.

        Returns:
            The freshly resolved entitlement
        """
        with self._refresh_lock:
            while True:
                with self._lock:
                    generation = self._generation

                as_of = self._clock.now()
                receipts = self._read_store()
                if receipts is None:
                    # Fail closed for this call only; the next read retries the store
                    entitlement = Entitlement.none()
                    stale_at: Optional[datetime] = as_of
                else:
                    entitlement = resolve(receipts, as_of)
                    stale_at = self._compute_stale_at(receipts, as_of)

                with self._lock:
                    if generation != self._generation:
                        logger.debug(
                            "entitlement_refresh_discarded",
                            started_generation=generation,
                            current_generation=self._generation,
                        )
                        continue
                    previous = self._entitlement
                    self._entitlement = entitlement
                    self._stale_at = stale_at
                    self._store_failed = receipts is None
                break

        if entitlement != previous:
            log_entitlement_change(
                previous,
                entitlement,
                receipt_count=len(receipts) if receipts is not None else 0,
                as_of=as_of.isoformat(),
            )
            self._notify(entitlement)

        self._schedule_timer()
        return entitlement

    def refresh_if_stale(self) -> Entitlement:
        """Re-resolve only when the cached entitlement is missing or stale."""
        return self.current()

    def _read_store(self) -> Optional[list[Receipt]]:
        """Catalog-filtered receipts, or None when the store cannot be read."""
        try:
            receipts = self._store.list()
        except Exception as e:
            logger.error(
                "receipt_store_unavailable",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None

        if self._catalog is not None:
            receipts = self._catalog.filter_pro_receipts(receipts)
        return receipts

    @staticmethod
    def _compute_stale_at(receipts: list[Receipt], as_of: datetime) -> Optional[datetime]:
        """Earliest future expiry or grace end among receipts eligible at as_of.

        Any of them can change the winner, not only the current winner's
        boundary. Ineligible receipts never become eligible as time passes.
        """
        boundaries = []
        for receipt in receipts:
            if not evaluate_receipt(receipt, as_of).eligible:
                continue
            boundaries.append(receipt.expiry_time)
            if receipt.is_in_grace_period:
                boundaries.append(receipt.grace_period_end)
        future = [boundary for boundary in boundaries if boundary is not None and boundary > as_of]
        return min(future) if future else None

    def on_store_changed(self) -> None:
        """Receipt store listener: invalidate in-flight work and re-resolve."""
        with self._lock:
            self._generation += 1
        self.refresh()

    def on_time_changed(self, old_time: datetime, new_time: datetime) -> None:
        """Clock listener: re-resolve when time jumps past the boundary or backwards."""
        if new_time < old_time:
            self.refresh()
        else:
            self.refresh_if_stale()

    def subscribe(self, listener: EntitlementListener) -> Callable[[], None]:
        """Subscribe to entitlement changes.

        The listener is called with every entitlement that differs from the
        previously resolved one.

        Returns:
            Callable that unsubscribes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, entitlement: Entitlement) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(entitlement)
            except Exception as e:
                logger.error(
                    "entitlement_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )

    def start(self) -> Entitlement:
        """Resolve now and keep re-resolving at each validity boundary."""
        with self._lock:
            self._running = True
        logger.info("entitlement_watcher_started")
        return self.refresh()

    def stop(self) -> None:
        """Stop boundary timers. The cache stays usable through current()."""
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        logger.info("entitlement_watcher_stopped")

    def close(self) -> None:
        """Stop timers and detach from the store and clock."""
        self.stop()
        self._store.remove_listener(self.on_store_changed)
        self._clock.remove_listener(self.on_time_changed)

    def _schedule_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._running or self._stale_at is None:
                return
            if self._store_failed:
                delay = STORE_RETRY_DELAY.total_seconds()
            else:
                delay = max((self._stale_at - self._clock.now()).total_seconds(), 0.0)
            self._timer = threading.Timer(delay, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

        logger.debug("entitlement_refresh_scheduled", delay_seconds=round(delay, 3))

    def _on_timer(self) -> None:
        with self._lock:
            stale = self._entitlement is None or self._is_stale(self._clock.now())
        if stale:
            self.refresh()
        else:
            # Fired early, or a virtual clock has not reached the boundary yet
            self._schedule_timer()

    def debug_info(self) -> dict[str, Any]:
        """Snapshot of watcher state for diagnostics."""
        entitlement = self.current()
        with self._lock:
            stale_at = self._stale_at
            generation = self._generation
            running = self._running
            store_failed = self._store_failed
            listeners = len(self._listeners)
        return {
            "current_entitlement": entitlement.to_dict(),
            "is_pro": entitlement.is_pro,
            "is_valid": entitlement.is_valid_at(self._clock.now()),
            "stale_at": stale_at.isoformat() if stale_at else None,
            "generation": generation,
            "running": running,
            "store_failed": store_failed,
            "listeners": listeners,
            "receipt_count": self._store.count(),
            "catalog_restricted": self._catalog.is_restricted() if self._catalog else False,
        }
