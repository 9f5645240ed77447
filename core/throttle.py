"""
Call spacing for Klaviyo's rate-limited reporting endpoints.

The reporting endpoints allow roughly two calls per minute at steady
state. Rather than reacting to 429s (which are never retried), calls
that share that quota go through a `ReportThrottle`, which serializes
them and keeps at least `interval` seconds between the end of one call
and the start of the next. The first call is never delayed and nothing
waits after the last one.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional

from core.observability import get_logger

logger = get_logger(__name__)


class ReportThrottle:
    """
    Serializes calls and spaces them `interval` seconds apart.

    Usage:
        throttle = ReportThrottle(interval=31.0)

        async with throttle.slot("metric-aggregates"):
            response = await http.post(...)

    `sleep` and `clock` are injectable so tests run without waiting.
    """

    def __init__(
        self,
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_finished: Optional[float] = None
        self.calls = 0
        self.total_waited = 0.0

    def remaining(self) -> float:
        """Seconds the next call would have to wait right now."""
        if self._last_finished is None:
            return 0.0
        return max(0.0, self.interval - (self._clock() - self._last_finished))

    def estimate(self, pending_calls: int) -> float:
        """Lower bound, in seconds, for issuing `pending_calls` more calls."""
        if pending_calls <= 0:
            return 0.0
        return self.remaining() + self.interval * (pending_calls - 1)

    @asynccontextmanager
    async def slot(self, label: str = "") -> AsyncIterator[float]:
        """Hold the quota for one call; yields the seconds waited."""
        async with self._lock:
            wait = self.remaining()
            if wait > 0:
                logger.info(
                    f"Waiting {wait:.1f}s before next report call",
                    extra={"endpoint": label, "interval": self.interval},
                )
                await self._sleep(wait)
                self.total_waited += wait
            try:
                yield wait
            finally:
                self.calls += 1
                self._last_finished = self._clock()
