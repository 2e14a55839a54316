"""
Circuit breaker that stops hammering the catalog once it keeps failing.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional

log = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Requests pass through
    OPEN = "open"  # Requests are refused
    HALF_OPEN = "half_open"  # A trial request is allowed


class CircuitBreakerError(Exception):
    """Raised when a request is refused because the circuit is open."""


class CircuitBreaker:
    """
    Async context manager guarding calls to a remote service.

    After `failure_threshold` consecutive failures the circuit opens and every
    call is refused for `recovery_timeout` seconds. The next call after that is
    a trial: `success_threshold` successes close the circuit again, a failure
    re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30,
        success_threshold: int = 1,
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

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self.recovery_timeout:
            log.info("[yellow]Catalog circuit half-open, allowing a trial request.[/yellow]")
            self._state = CircuitState.HALF_OPEN
            self._successes = 0

    async def record_success(self) -> None:
        async with self._lock:
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    log.info("[green]✓ Catalog circuit closed again.[/green]")
                    self._state = CircuitState.CLOSED

    async def record_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                if self._state == CircuitState.CLOSED:
                    log.error(
                        f"[red]✗ Catalog circuit opened after {self._failures} "
                        f"consecutive failures.[/red]"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                self._failures = 0

    async def __aenter__(self):
        async with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerError(
                    f"Circuit is open; retrying after {self.recovery_timeout:.0f}s."
                )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.record_success()
        elif not issubclass(exc_type, asyncio.CancelledError):
            await self.record_failure()
        return False
