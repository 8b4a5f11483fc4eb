from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

log = logging.getLogger("groupsentry.rate_limiter")


class MinIntervalRateLimiter:
    """Enforces a minimum spacing between outbound API calls.

    Callers queue on one lock, so calls leave in arrival order and no two
    start closer than ``min_interval_seconds`` apart.
    """

    def __init__(
        self,
        min_interval_seconds: float = 0.1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    @property
    def min_interval_seconds(self) -> float:
        return self._interval

    async def wait(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                remaining = self._interval - (self._clock() - self._last_call)
                if remaining > 0:
                    log.debug("Spacing API call by %.3fs", remaining)
                    await self._sleep(remaining)
            self._last_call = self._clock()
