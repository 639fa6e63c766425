"""Rate Limiter — requests-per-minute throttle over a rolling window.

Admits at most N calls in any trailing 60-second window. A caller that
finds the window full sleeps until the oldest admission leaves it, then
re-checks: concurrent callers may race for the freed slot, so a single
wait is never assumed to be enough. The admission timestamp is recorded
only once the caller is actually admitted.

Thread-safe via asyncio.Lock around prune/append; waits happen outside it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from llm_relay.core.metrics import THROTTLE_WAIT
from llm_relay.gateway.cancellation import CancellationToken

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """Shared throttle for every dispatch of one client.

    Usage:
        limiter = SlidingWindowRateLimiter(requests_per_minute=60)

        # Before sending a request:
        await limiter.throttle(token)
    """

    def __init__(
        self,
        requests_per_minute: int = 0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._limit = max(0, requests_per_minute)
        self._clock = clock
        self._sleep = sleep
        self._entries: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def requests_per_minute(self) -> int:
        return self._limit

    def set_rate_limit(self, requests_per_minute: int) -> None:
        """Change the limit; 0 disables throttling."""
        self._limit = max(0, requests_per_minute)

    def _prune(self, now: float) -> None:
        """Remove entries older than the 1-minute window."""
        cutoff = now - WINDOW_SECONDS
        while self._entries and self._entries[0] <= cutoff:
            self._entries.popleft()

    def wait_time(self, now: float) -> float:
        """Seconds until a slot frees up. 0 means the call may proceed now."""
        self._prune(now)
        if len(self._entries) < self._limit:
            return 0.0
        oldest_ts = self._entries[0]
        return max((oldest_ts + WINDOW_SECONDS) - now, 0.0)

    async def throttle(self, token: CancellationToken | None = None) -> float:
        """Suspend until the call is admissible, then record it.

        Returns the total time spent waiting, in seconds.
        """
        if self._limit <= 0:
            return 0.0

        waited = 0.0
        while True:
            if token is not None:
                token.raise_if_cancelled()

            async with self._lock:
                now = self._clock()
                wait = self.wait_time(now)
                if wait <= 0:
                    self._entries.append(now)
                    break

            logger.debug("Rate limit of %d/min reached, waiting %.2fs", self._limit, wait)
            if token is not None:
                await token.guard(self._sleep(wait))
            else:
                await self._sleep(wait)
            waited += wait

        if waited:
            THROTTLE_WAIT.observe(waited)
        return waited

    @property
    def current_rpm(self) -> int:
        """Admissions in the current 1-minute window."""
        self._prune(self._clock())
        return len(self._entries)

    def get_stats(self) -> dict:
        return {
            "current_rpm": self.current_rpm,
            "rpm_limit": self._limit,
        }
