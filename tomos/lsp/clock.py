"""Injectable time source for supervision.

Health checks and restart backoff never sleep directly; they schedule work
on a ``Clock``. ``SystemClock`` is the real one. Tests substitute a manual
clock that only advances when told to.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

log = logging.getLogger(__name__)


class ScheduledCall(ABC):
    """Handle to a scheduled callback."""

    @abstractmethod
    def cancel(self) -> None:
        """Prevent any further runs. Safe to call more than once."""


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        """Run ``callback`` once after ``delay`` seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledCall:
        """Run ``callback`` every ``interval`` seconds until cancelled."""


class _TimerCall(ScheduledCall):
    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class _PeriodicCall(ScheduledCall):
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="tomos-periodic", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._callback()
            except Exception:
                log.exception("Periodic callback failed")

    def cancel(self) -> None:
        self._stopped.set()


class SystemClock(Clock):
    """Wall-clock implementation backed by ``time.monotonic`` and threads."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return _TimerCall(timer)

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledCall:
        return _PeriodicCall(interval, callback)
