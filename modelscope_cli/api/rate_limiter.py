"""
Adaptive pacing of listing requests so large trees do not trip the hub's 429 limit.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)


class AdaptiveRateLimiter:
    """
    Spaces calls at least ``1 / rate`` seconds apart. Each 429 halves the rate
    (never below ``min_calls_per_second``); after ``recovery_after`` quiet
    seconds the rate creeps back up towards ``max_calls_per_second``.
    """

    def __init__(
        self,
        initial_calls_per_second: float = 8.0,
        max_calls_per_second: float = 12.0,
        min_calls_per_second: float = 1.0,
        recovery_after: float = 300.0,
    ):
        self.rate = initial_calls_per_second
        self.max_rate = max_calls_per_second
        self.min_rate = min_calls_per_second
        self.recovery_after = recovery_after
        self._next_slot = 0.0
        self._last_throttle = 0.0
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        return 1.0 / self.rate

    async def on_429(self) -> None:
        """Backs off after the server reported too many requests."""
        async with self._lock:
            self.rate = max(self.min_rate, self.rate / 2)
            self._last_throttle = time.monotonic()
            log.warning(
                f"[yellow]Hub is throttling listings; slowing to "
                f"{self.rate:.1f} requests/s[/yellow]"
            )

    async def acquire(self) -> None:
        """Waits for the next free request slot."""
        async with self._lock:
            now = time.monotonic()
            if self._last_throttle and now - self._last_throttle > self.recovery_after:
                self.rate = min(self.max_rate, self.rate * 1.005)

            wait = self._next_slot - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = time.monotonic()
            self._next_slot = now + self.interval
