"""Request pacing for the catalog client"""

import asyncio
import time
from typing import Callable


class RateLimiter:
    """Simple interval rate limiter: at most requests_per_second calls per second"""

    def __init__(self, requests_per_second: float, clock: Callable[[], float] = time.monotonic):
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.last_call = None
        self._clock = clock
        self._lock = asyncio.Lock()

    async def wait(self):
        """Wait if necessary to respect rate limit"""
        async with self._lock:
            if self.last_call is not None:
                elapsed = self._clock() - self.last_call
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)

            self.last_call = self._clock()
