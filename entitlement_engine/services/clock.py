"""Clocks driving entitlement resolution.

Responsibilities:
- Provide the current instant (wall clock or virtual)
- Fast-forward virtual time (days, hours, minutes, seconds)
- Notify listeners when virtual time moves so cached entitlements can expire
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from entitlement_engine.logging_config import get_logger
from entitlement_engine.utils.timestamps import datetime_to_millis, ensure_utc, utc_now

logger = get_logger(__name__)

# Called with (old_time, new_time) whenever the clock jumps
ClockListener = Callable[[datetime, datetime], None]


class Clock:
    """Wall clock. Time flows on its own; listeners are never notified."""

    def __init__(self) -> None:
        self._listeners: list[ClockListener] = []
        self._listener_lock = threading.Lock()

    def now(self) -> datetime:
        """Get the current instant as an aware UTC datetime."""
        return utc_now()

    def add_listener(self, listener: ClockListener) -> None:
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: ClockListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, old_time: datetime, new_time: datetime) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(old_time, new_time)
            except Exception as e:
                logger.error(
                    "clock_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    exc_info=True,
                )


class VirtualClock(Clock):
    """Controllable clock for fast-forwarding through entitlement transitions.

    Args:
        start: Initial virtual time (defaults to the current wall-clock time)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._virtual_time = ensure_utc(start) if start is not None else utc_now()
        self._offset = timedelta(0)

        logger.info("virtual_clock_initialized", virtual_time=self._virtual_time.isoformat())

    def now(self) -> datetime:
        with self._lock:
            return self._virtual_time

    @property
    def offset(self) -> timedelta:
        """Total time advanced since creation or the last reset."""
        with self._lock:
            return self._offset

    def advance(
        self,
        days: int = 0,
        hours: int = 0,
        minutes: int = 0,
        seconds: int = 0,
    ) -> dict:
        """Advance virtual time.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance
            seconds: number of seconds to advance

        Returns:
            Dictionary with:
                - old_time_millis: time before advancement
                - new_time_millis: time after advancement
                - time_advanced_millis: amount of time advanced

        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0 or seconds < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)

        with self._lock:
            old_time = self._virtual_time
            self._virtual_time = old_time + delta
            self._offset += delta
            new_time = self._virtual_time

        if delta:
            logger.info(
                "time_advanced",
                old_time=old_time.isoformat(),
                new_time=new_time.isoformat(),
                days=days,
                hours=hours,
                minutes=minutes,
                seconds=seconds,
            )
            self._notify(old_time, new_time)

        return {
            "old_time_millis": datetime_to_millis(old_time),
            "new_time_millis": datetime_to_millis(new_time),
            "time_advanced_millis": datetime_to_millis(new_time) - datetime_to_millis(old_time),
        }

    def set_time(self, new_time: datetime) -> dict:
        """Jump virtual time forward to a specific instant.

        Raises:
            ValueError: If new_time is before the current virtual time
        """
        new_time = ensure_utc(new_time)
        with self._lock:
            old_time = self._virtual_time
            if new_time < old_time:
                raise ValueError(
                    f"Cannot set time backwards, current: {old_time.isoformat()}, "
                    f"requested: {new_time.isoformat()}"
                )
            self._offset += new_time - old_time
            self._virtual_time = new_time

        logger.info("time_set", old_time=old_time.isoformat(), new_time=new_time.isoformat())
        self._notify(old_time, new_time)

        return {
            "old_time_millis": datetime_to_millis(old_time),
            "new_time_millis": datetime_to_millis(new_time),
        }

    def reset_time(self) -> dict:
        """Reset virtual time back to the real current time."""
        with self._lock:
            old_time = self._virtual_time
            real_time = utc_now()
            self._virtual_time = real_time
            self._offset = timedelta(0)

        logger.info("time_reset", old_time=old_time.isoformat(), new_time=real_time.isoformat())
        self._notify(old_time, real_time)

        return {
            "old_time_millis": datetime_to_millis(old_time),
            "new_time_millis": datetime_to_millis(real_time),
        }
