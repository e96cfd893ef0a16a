"""Fixed-window rate limiting for manual triggers."""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict

from ..config.logging import LoggerMixin


@dataclass
class RateLimitDecision:
    """Outcome of one rate-limited request."""

    allowed: bool
    remaining: int
    reset_at: float
    retry_after: int


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimitStore(LoggerMixin):
    """
    Per-identifier fixed-window counters held in process memory.

    The clock is injected so tests can move time. One store is created per
    application and handed to request handlers as a dependency.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = asyncio.Lock()

    async def hit(
        self, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        """
        Count one request against an identifier.

        Args:
            identifier: Caller key, e.g. ``run-alerts-now:<user id>``
            limit: Requests allowed per window
            window_seconds: Window length

        Returns:
            RateLimitDecision telling whether the request may proceed
        """
        async with self._lock:
            now = self.clock()
            window = self._windows.get(identifier)

            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[identifier] = window

            if window.count >= limit:
                retry_after = max(1, int(window.reset_at - now + 0.999))
                self.logger.warning(
                    "Rate limit exceeded",
                    identifier=identifier,
                    limit=limit,
                    retry_after=retry_after,
                )
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_at,
                    retry_after=retry_after,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=limit - window.count,
                reset_at=window.reset_at,
                retry_after=0,
            )

    async def reset(self, identifier: str) -> None:
        """Forget the counter of an identifier."""
        async with self._lock:
            self._windows.pop(identifier, None)

    async def purge_expired(self) -> int:
        """Drop windows that already ended, returning how many were dropped."""
        async with self._lock:
            now = self.clock()
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
            return len(expired)
