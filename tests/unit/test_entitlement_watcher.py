"""Unit tests for the EntitlementWatcher service."""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from entitlement_engine.models.entitlement import Entitlement, EntitlementReason
from entitlement_engine.models.receipt import PurchaseState, Receipt
from entitlement_engine.models.settings import ProProductDefinition
from entitlement_engine.repositories.product_catalog import ProductCatalog
from entitlement_engine.repositories.receipt_store import InMemoryReceiptStore, ReceiptStore
from entitlement_engine.services.clock import Clock, VirtualClock
from entitlement_engine.services.entitlement_watcher import STORE_RETRY_DELAY, EntitlementWatcher
from entitlement_engine.services.resolver import resolve
from entitlement_engine.utils.timestamps import utc_now

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def make_receipt(token="token_001", product_id="pro_monthly", **overrides) -> Receipt:
    fields = {
        "purchase_token": token,
        "product_id": product_id,
        "purchase_state": PurchaseState.PURCHASED,
        "purchase_time": T0,
        "expiry_time": T0 + 30 * DAY,
    }
    fields.update(overrides)
    return Receipt(**fields)


@pytest.fixture
def store():
    return InMemoryReceiptStore()


@pytest.fixture
def clock():
    return VirtualClock(start=T0)


@pytest.fixture
def watcher(store, clock):
    watcher = EntitlementWatcher(store, clock=clock)
    yield watcher
    watcher.close()


class TestCurrentEntitlement:
    """Test cached resolution."""

    def test_empty_store_is_none(self, watcher):
        assert watcher.current() == Entitlement.none()

    def test_resolves_saved_receipt(self, store, watcher):
        store.save(make_receipt())
        entitlement = watcher.current()

        assert entitlement.is_pro is True
        assert entitlement.until == T0 + 30 * DAY
        assert watcher.is_pro is True

    def test_stale_at_tracks_boundary(self, store, watcher):
        store.save(make_receipt())
        watcher.current()
        assert watcher.stale_at == T0 + 30 * DAY

    def test_perpetual_entitlement_never_stale(self, store, watcher):
        store.save(make_receipt(expiry_time=None))
        watcher.current()
        assert watcher.stale_at is None

    def test_cached_value_reused(self, store, clock):
        store.save(make_receipt())
        watcher = EntitlementWatcher(store, clock=clock)
        first = watcher.current()

        with patch("entitlement_engine.services.entitlement_watcher.resolve") as mock_resolve:
            assert watcher.current() is first
        mock_resolve.assert_not_called()

    def test_catalog_filters_non_pro_products(self, store, clock):
        catalog = ProductCatalog([ProProductDefinition(id="pro_monthly")])
        watcher = EntitlementWatcher(store, clock=clock, catalog=catalog)

        store.save(make_receipt(product_id="coins_100", expiry_time=None))
        assert watcher.current().is_pro is False

        store.save(make_receipt(product_id="pro_monthly"))
        assert watcher.current().is_pro is True

    def test_store_failure_fails_closed(self, clock):
        store = MagicMock(spec=ReceiptStore)
        store.list.side_effect = RuntimeError("disk on fire")
        watcher = EntitlementWatcher(store, clock=clock)

        with patch("entitlement_engine.services.entitlement_watcher.logger") as mock_logger:
            entitlement = watcher.current()

        assert entitlement == Entitlement.none()
        assert mock_logger.error.call_args[0][0] == "receipt_store_unavailable"

    def test_store_failure_is_retried_on_next_read(self, clock):
        store = MagicMock(spec=ReceiptStore)
        store.list.side_effect = [RuntimeError("disk on fire"), [make_receipt()]]
        watcher = EntitlementWatcher(store, clock=clock)

        assert watcher.current().is_pro is False
        assert watcher.stale_at == T0

        entitlement = watcher.current()
        assert entitlement.is_pro is True
        assert entitlement.until == T0 + 30 * DAY
        assert store.list.call_count == 2

    def test_store_failure_schedules_retry_timer(self, clock):
        store = MagicMock(spec=ReceiptStore)
        store.list.side_effect = RuntimeError("disk on fire")
        watcher = EntitlementWatcher(store, clock=clock)

        try:
            watcher.start()
            assert watcher._timer is not None
            assert watcher._timer.interval == STORE_RETRY_DELAY.total_seconds()
            assert watcher.debug_info()["store_failed"] is True
        finally:
            watcher.close()


class TestTimeTransitions:
    """Test re-resolution as the clock moves."""

    def test_expiry_flips_entitlement(self, store, clock, watcher):
        store.save(make_receipt())
        assert watcher.current().is_pro is True

        clock.advance(days=31)
        entitlement = watcher.current()
        assert entitlement.is_pro is False
        assert entitlement.reason == EntitlementReason.EXPIRED

    def test_clock_advance_notifies_subscribers(self, store, clock, watcher):
        store.save(make_receipt(auto_renewing=True))
        watcher.current()
        received = []
        watcher.subscribe(received.append)

        clock.advance(days=29)
        assert received == []

        clock.advance(days=2)
        assert len(received) == 1
        assert received[0].reason == EntitlementReason.AWAITING_RENEWAL

    def test_earlier_boundary_of_another_receipt_refreshes(self, store, clock, watcher):
        """A non-winning receipt lapsing into a longer grace window takes over."""
        store.save(make_receipt("token_owned", expiry_time=T0 + 20 * DAY))
        store.save(
            make_receipt(
                "token_grace",
                expiry_time=T0 + 10 * DAY,
                is_in_grace_period=True,
                grace_period_end=T0 + 40 * DAY,
            )
        )
        assert watcher.current().until == T0 + 20 * DAY
        assert watcher.stale_at == T0 + 10 * DAY

        clock.advance(days=15)
        entitlement = watcher.current()
        assert entitlement == resolve(store.list(), clock.now())
        assert entitlement.reason == EntitlementReason.GRACE
        assert entitlement.until == T0 + 40 * DAY
        assert watcher.stale_at == T0 + 20 * DAY

    def test_backwards_time_forces_refresh(self, watcher):
        with patch.object(watcher, "refresh") as mock_refresh:
            watcher.on_time_changed(T0 + DAY, T0)
        mock_refresh.assert_called_once()

    def test_forward_time_refreshes_only_when_stale(self, store, watcher):
        store.save(make_receipt())
        watcher.current()
        with patch.object(watcher, "refresh") as mock_refresh:
            watcher.on_time_changed(T0, T0 + DAY)
        mock_refresh.assert_not_called()


class TestStoreChanges:
    """Test re-resolution on receipt store changes."""

    def test_subscriber_notified_on_change(self, store, watcher):
        watcher.current()
        received = []
        watcher.subscribe(received.append)

        store.save(make_receipt())
        assert len(received) == 1
        assert received[0].is_pro is True

    def test_identical_save_does_not_notify(self, store, watcher):
        store.save(make_receipt())
        watcher.current()
        received = []
        watcher.subscribe(received.append)

        store.save(make_receipt())
        assert received == []

    def test_refund_revokes(self, store, watcher):
        receipt = make_receipt()
        store.save(receipt)
        assert watcher.current().is_pro is True

        store.save(receipt.with_refund())
        entitlement = watcher.current()
        assert entitlement.is_pro is False
        assert entitlement.reason == EntitlementReason.NO_VALID_RECEIPTS

    def test_unsubscribe(self, store, watcher):
        received = []
        unsubscribe = watcher.subscribe(received.append)
        unsubscribe()
        store.save(make_receipt())
        assert received == []

    def test_failing_subscriber_does_not_break_refresh(self, store, watcher):
        watcher.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        received = []
        watcher.subscribe(received.append)

        store.save(make_receipt())
        assert len(received) == 1

    def test_in_flight_result_discarded_when_store_changes(self, clock):
        """A store change during resolution reruns it against the newer receipts."""
        yearly = make_receipt("token_yearly", product_id="pro_yearly", expiry_time=T0 + 365 * DAY)

        class RacingStore(InMemoryReceiptStore):
            raced = False

            def list(self):
                snapshot = super().list()
                if not self.raced:
                    self.raced = True
                    self.save(yearly)
                return snapshot

        store = RacingStore()
        store.save(make_receipt())
        watcher = EntitlementWatcher(store, clock=clock)

        entitlement = watcher.refresh()
        assert entitlement.until == T0 + 365 * DAY
        assert watcher.current().until == T0 + 365 * DAY

    def test_close_detaches_from_store(self, store, clock):
        watcher = EntitlementWatcher(store, clock=clock)
        received = []
        watcher.subscribe(received.append)
        watcher.close()

        store.save(make_receipt())
        assert received == []


class TestLifecycle:
    """Test start/stop and boundary timers."""

    def test_start_schedules_timer_at_boundary(self, store, watcher):
        store.save(make_receipt())
        entitlement = watcher.start()

        assert entitlement.is_pro is True
        assert watcher.is_running is True
        assert watcher._timer is not None

        watcher.stop()
        assert watcher.is_running is False
        assert watcher._timer is None

    def test_no_timer_for_perpetual_entitlement(self, store, watcher):
        store.save(make_receipt(expiry_time=None))
        watcher.start()
        assert watcher._timer is None

    def test_timer_fires_at_wall_clock_boundary(self, store):
        now = utc_now()
        store.save(
            make_receipt(purchase_time=now - DAY, expiry_time=now + timedelta(milliseconds=300))
        )
        watcher = EntitlementWatcher(store, clock=Clock())
        flipped = threading.Event()
        watcher.subscribe(lambda entitlement: flipped.set() if not entitlement.is_pro else None)

        try:
            assert watcher.start().is_pro is True
            assert flipped.wait(timeout=5)
            assert watcher.current().reason == EntitlementReason.EXPIRED
        finally:
            watcher.close()


class TestDebugInfo:

    def test_debug_info(self, store, watcher):
        store.save(make_receipt())
        info = watcher.debug_info()

        assert info["is_pro"] is True
        assert info["receipt_count"] == 1
        assert info["current_entitlement"]["reason"] == "owned"
        assert info["stale_at"] == (T0 + 30 * DAY).isoformat()
        assert info["catalog_restricted"] is False
