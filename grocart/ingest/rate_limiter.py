"""Per-source minimum-interval rate limiting."""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Optional

from grocart import metrics

logger = logging.getLogger(__name__)


class RateLimiter:
    """Enforces a minimum gap between the *starts* of requests to each source.

    The watermark is recorded when a request is released, before it is sent,
    so a request that later fails still consumes its slot. State is
    process-local; each Fetcher owns one instance.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}
        self._clock = clock or time.monotonic

    async def acquire(self, source: str, min_interval: float) -> float:
        """
        Wait until ``min_interval`` seconds have passed since the previous
        request to ``source`` started, then claim the slot.

        Args:
            source: Source identifier
            min_interval: Minimum seconds between request starts

        Returns:
            Seconds spent waiting
        """
        async with self.locks[source]:
            wait_needed = self.time_until_ready(source, min_interval)
            if wait_needed > 0:
                logger.debug(f"Rate limit for {source}: waiting {wait_needed:.2f}s")
                await asyncio.sleep(wait_needed)

            self.last_request[source] = self._clock()

        metrics.rate_limit_wait_seconds.labels(source=source).observe(wait_needed)
        return wait_needed

    def time_until_ready(self, source: str, min_interval: float) -> float:
        """Seconds until ``source`` may be called again, without waiting."""
        last_time = self.last_request.get(source)
        if last_time is None:
            return 0.0
        return max(0.0, min_interval - (self._clock() - last_time))
