from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional

from pinger import config

logger = logging.getLogger(__name__)


class SendRateLimiter:
    """Caps initial sends to ``limit`` within any rolling ``window_s``.

    Keeps the timestamps of admitted sends; resends never call ``acquire``.
    """

    def __init__(
        self,
        limit: int = config.TXS_PER_MINUTE_LIMIT,
        window_s: float = config.RATE_WINDOW_S,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if int(limit) <= 0:
            raise ValueError("limit must be positive")
        self.limit = int(limit)
        self.window_s = float(window_s)
        self._clock = clock
        self._sleep = sleep
        self._sent: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window_s:
            self._sent.popleft()

    def in_window(self, now_s: Optional[float] = None) -> int:
        now = float(now_s if now_s is not None else self._clock())
        self._prune(now)
        return len(self._sent)

    def wait_time(self, now_s: Optional[float] = None) -> float:
        now = float(now_s if now_s is not None else self._clock())
        self._prune(now)
        if len(self._sent) < self.limit:
            return 0.0
        return max(0.0, self._sent[0] + self.window_s - now)

    async def acquire(self) -> float:
        """Block until one more send is allowed, then count it. Returns seconds waited."""
        waited = 0.0
        while True:
            delay = self.wait_time()
            if delay <= 0:
                self._sent.append(float(self._clock()))
                return waited
            logger.info(
                "[Rate Limiter] %d sends in the last %.0fs, sleeping %.2fs",
                len(self._sent),
                self.window_s,
                delay,
            )
            await self._sleep(delay)
            waited += delay
