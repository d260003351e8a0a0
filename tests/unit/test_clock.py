"""Unit tests for the wall and virtual clocks."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from entitlement_engine.services.clock import Clock, VirtualClock
from entitlement_engine.utils.timestamps import datetime_to_millis, utc_now

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return VirtualClock(start=T0)


class TestWallClock:

    def test_now_is_aware_utc(self):
        now = Clock().now()
        assert now.tzinfo is not None
        assert abs(now - utc_now()) < timedelta(seconds=5)


class TestVirtualClockBasics:

    def test_starts_at_given_time(self, clock):
        assert clock.now() == T0
        assert clock.offset == timedelta(0)

    def test_defaults_to_current_time(self):
        assert abs(VirtualClock().now() - utc_now()) < timedelta(seconds=5)

    def test_naive_start_treated_as_utc(self):
        assert VirtualClock(start=datetime(2025, 1, 1)).now() == T0

    def test_time_does_not_flow(self, clock):
        assert clock.now() == clock.now()


class TestAdvance:

    def test_advance_days(self, clock):
        result = clock.advance(days=30)

        assert clock.now() == T0 + timedelta(days=30)
        assert result["old_time_millis"] == datetime_to_millis(T0)
        assert result["new_time_millis"] == datetime_to_millis(T0 + timedelta(days=30))
        assert result["time_advanced_millis"] == 30 * 24 * 60 * 60 * 1000

    def test_advance_mixed_units(self, clock):
        clock.advance(days=1, hours=2, minutes=3, seconds=4)
        assert clock.now() == T0 + timedelta(days=1, hours=2, minutes=3, seconds=4)
        assert clock.offset == timedelta(days=1, hours=2, minutes=3, seconds=4)

    def test_advance_accumulates(self, clock):
        clock.advance(days=1)
        clock.advance(days=1)
        assert clock.offset == timedelta(days=2)

    @pytest.mark.parametrize("field", ["days", "hours", "minutes", "seconds"])
    def test_negative_advance_raises(self, clock, field):
        with pytest.raises(ValueError, match="backwards"):
            clock.advance(**{field: -1})
        assert clock.now() == T0

    def test_listener_notified(self, clock):
        listener = MagicMock()
        clock.add_listener(listener)
        clock.advance(hours=1)
        listener.assert_called_once_with(T0, T0 + timedelta(hours=1))

    def test_zero_advance_does_not_notify(self, clock):
        listener = MagicMock()
        clock.add_listener(listener)
        clock.advance()
        listener.assert_not_called()

    def test_failing_listener_does_not_block_others(self, clock):
        clock.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        healthy = MagicMock()
        clock.add_listener(healthy)

        clock.advance(days=1)
        healthy.assert_called_once()

    def test_removed_listener_not_notified(self, clock):
        listener = MagicMock()
        clock.add_listener(listener)
        clock.remove_listener(listener)
        clock.advance(days=1)
        listener.assert_not_called()


class TestSetAndReset:

    def test_set_time_forward(self, clock):
        target = T0 + timedelta(days=10)
        clock.set_time(target)
        assert clock.now() == target
        assert clock.offset == timedelta(days=10)

    def test_set_time_backwards_raises(self, clock):
        with pytest.raises(ValueError):
            clock.set_time(T0 - timedelta(days=1))

    def test_reset_time(self, clock):
        clock.advance(days=400)
        listener = MagicMock()
        clock.add_listener(listener)

        clock.reset_time()

        assert clock.offset == timedelta(0)
        assert abs(clock.now() - utc_now()) < timedelta(seconds=5)
        listener.assert_called_once()
