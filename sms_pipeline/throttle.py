"""
Fixed-window request throttling keyed by an arbitrary identifier.

Each identifier gets a window of ``window_seconds`` that opens with its first
accepted request. Up to ``max_requests`` are accepted inside the window; a
request at or after the window end opens a fresh one. Because windows are
fixed rather than sliding, up to ``2 * max_requests`` may be accepted in a
span of ``2 * window_seconds`` that straddles a reset.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

logger = logging.getLogger(__name__)


@dataclass
class ThrottleWindow:
    count: int
    reset_at: float


class ThrottleGuard:
    """
    In-memory throttle shared by every request handled by this process.

    Args:
        max_requests: Accepted requests allowed per window
        window_seconds: Window length in seconds
        clock: Monotonic time source in seconds (injectable for tests)
        name: Label used in logs and metrics
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._windows: Dict[str, ThrottleWindow] = {}
        self._lock = threading.Lock()

    def allow(self, identifier: str) -> bool:
        """Consume a slot for ``identifier`` if one is free."""
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)

            if window is None or now >= window.reset_at:
                self._windows[identifier] = ThrottleWindow(
                    count=1, reset_at=now + self.window_seconds
                )
                return True

            if window.count >= self.max_requests:
                logger.info(
                    f"Throttle '{self.name}' denied request",
                    extra={"count": window.count, "limit": self.max_requests},
                )
                return False

            window.count += 1
            return True

    def remaining(self, identifier: str) -> int:
        """Requests still allowed for ``identifier`` in its current window."""
        with self._lock:
            window = self._active_window(identifier)
            if window is None:
                return self.max_requests
            return max(0, self.max_requests - window.count)

    def time_until_reset(self, identifier: str) -> float:
        """Seconds until the current window of ``identifier`` ends, or 0."""
        with self._lock:
            window = self._active_window(identifier)
            if window is None:
                return 0.0
            return max(0.0, window.reset_at - self._clock())

    def cleanup(self) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Throttle '{self.name}' purged {len(expired)} expired windows")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _active_window(self, identifier: str):
        # caller holds the lock
        window = self._windows.get(identifier)
        if window is None or self._clock() >= window.reset_at:
            return None
        return window


async def run_periodic_cleanup(guards, interval_seconds: float) -> None:
    """Sweep expired windows from ``guards`` every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        for guard in guards:
            guard.cleanup()
