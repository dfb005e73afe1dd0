"""
Circuit breaker guarding the hub API, so a dead endpoint fails a run quickly
instead of timing out on every directory.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

log = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised when a call is attempted while the circuit is open."""


class CircuitBreaker:
    """
    Async context manager counting consecutive failures of the wrapped block.

    After ``failure_threshold`` failures the circuit opens and calls are
    refused for ``recovery_timeout`` seconds. The next call then runs in the
    half-open state; ``success_threshold`` successes close the circuit again,
    while a single failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._successes = 0

    async def __aenter__(self):
        async with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = time.monotonic() - (self._opened_at or 0.0)
                if elapsed < self.recovery_timeout:
                    raise CircuitBreakerError(
                        f"Hub API circuit is open after {self._failures} failures; "
                        f"retrying in {self.recovery_timeout - elapsed:.0f}s."
                    )
                log.info("[yellow]Probing hub API after circuit cool-down[/yellow]")
                self._state = CircuitState.HALF_OPEN
                self._successes = 0
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        async with self._lock:
            if exc_type is None:
                self._failures = 0
                if self._state is CircuitState.HALF_OPEN:
                    self._successes += 1
                    if self._successes >= self.success_threshold:
                        log.info("[green]✓ Hub API recovered; circuit closed.[/green]")
                        self._state = CircuitState.CLOSED
                return False

            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                log.warning("[yellow]Hub API probe failed; circuit reopened.[/yellow]")
                self._trip()
            elif self._failures >= self.failure_threshold:
                log.error(
                    f"[red]✗ Circuit opened after {self._failures} consecutive "
                    f"hub API failures.[/red]"
                )
                self._trip()
        return False
