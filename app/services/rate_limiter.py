"""
Affiliate API rate limiter.

Three limits apply to every call against the affiliate network:
1. Calls per minute (sliding 60s window, default 10)
2. Calls per hour (sliding 3600s window, default 100)
3. Minimum spacing between consecutive calls (default 3s)

Callers never get rejected; acquire() suspends until a slot opens. Waiters
are served in arrival order because the asyncio.Lock is held while waiting.

One limiter is shared per SyncContext; do not create ad-hoc instances for
individual requests or the limits stop meaning anything.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from app.config import settings

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


class AffiliateRateLimiter:
    """Sliding-window limiter for the affiliate API (asyncio-safe)."""

    def __init__(
        self,
        max_per_minute: Optional[int] = None,
        max_per_hour: Optional[int] = None,
        min_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_per_minute = max_per_minute or settings.AFFILIATE_MAX_CALLS_PER_MINUTE
        self.max_per_hour = max_per_hour or settings.AFFILIATE_MAX_CALLS_PER_HOUR
        self.min_interval = (
            settings.AFFILIATE_MIN_CALL_INTERVAL_SECONDS if min_interval is None else min_interval
        )
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._calls: Deque[float] = deque()  # last hour of call timestamps
        self._last_call: Optional[float] = None
        self._total_calls = 0
        self._total_wait = 0.0

    def _purge(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= HOUR:
            self._calls.popleft()

    def _minute_count(self, now: float) -> int:
        return sum(1 for t in self._calls if now - t < MINUTE)

    def _wait_time(self, now: float) -> float:
        self._purge(now)
        wait = 0.0

        if self._last_call is not None:
            wait = max(wait, self.min_interval - (now - self._last_call))

        minute_calls = [t for t in self._calls if now - t < MINUTE]
        if len(minute_calls) >= self.max_per_minute:
            # Oldest call that must leave the window before we fit
            oldest = minute_calls[len(minute_calls) - self.max_per_minute]
            wait = max(wait, MINUTE - (now - oldest))

        if len(self._calls) >= self.max_per_hour:
            oldest = self._calls[len(self._calls) - self.max_per_hour]
            wait = max(wait, HOUR - (now - oldest))

        return wait

    async def _wait_for_slot(self) -> None:
        while True:
            wait = self._wait_time(self._clock())
            if wait <= 0:
                return
            logger.debug(f"Affiliate rate limit reached, waiting {wait:.2f}s")
            self._total_wait += wait
            await self._sleep(wait)

    def _stamp(self) -> None:
        now = self._clock()
        self._calls.append(now)
        self._last_call = now
        self._total_calls += 1

    async def await_slot(self) -> None:
        """Suspend until a call would be within all limits."""
        async with self._lock:
            await self._wait_for_slot()

    def record_call(self) -> None:
        """Record that a call was just made."""
        self._stamp()

    async def acquire(self) -> None:
        """Wait for a slot and record the call, atomically."""
        async with self._lock:
            await self._wait_for_slot()
            self._stamp()

    def get_stats(self) -> Dict[str, float]:
        now = self._clock()
        self._purge(now)
        return {
            "calls_last_minute": self._minute_count(now),
            "calls_last_hour": len(self._calls),
            "max_per_minute": self.max_per_minute,
            "max_per_hour": self.max_per_hour,
            "min_interval_seconds": self.min_interval,
            "total_calls": self._total_calls,
            "total_wait_seconds": round(self._total_wait, 3),
        }
