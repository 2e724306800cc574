from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from feed.cells import FreshnessCell
from feed.stream import WatcherFailedError
from infra.metrics import METRICS
from infra.rpc import RPCError
from pinger import config

logger = logging.getLogger(__name__)


def max_prioritization_fee(samples: Iterable[Dict[str, Any]]) -> Optional[int]:
    best: Optional[int] = None
    for s in samples:
        if not isinstance(s, dict):
            continue
        fee = s.get("prioritizationFee")
        if not isinstance(fee, int) or isinstance(fee, bool):
            continue
        if best is None or fee > best:
            best = fee
    return best


class FeeWatcher:
    """Polls recent prioritization fees and keeps the maximum sample.

    Every successful poll refreshes the cell, so a quiet network with a
    constant fee still reads as fresh. Individual poll failures are logged
    and skipped; ``max_failures`` consecutive failures stop the watcher.
    """

    name = "Priority Fees Watcher"

    def __init__(
        self,
        rpc: Any,
        cell: FreshnessCell[int],
        *,
        percentile: Optional[int] = None,
        interval_ms: int = config.FEE_POLL_INTERVAL_MS,
        max_failures: int = config.FEE_MAX_POLL_FAILURES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.cell = cell
        self.percentile = percentile
        self.interval_s = max(0.0, float(interval_ms) / 1000.0)
        self.max_failures = int(max_failures)
        self._sleep = sleep
        self.failures = 0

    async def poll_once(self) -> Optional[int]:
        try:
            samples = await self.rpc.get_recent_prioritization_fees(percentile=self.percentile)
        except RPCError as e:
            self.failures += 1
            METRICS.inc_reason("fee_poll_fail", e.reason, 1)
            logger.error("[%s] RPC request failed: %s", self.name, e)
            return None
        fee = max_prioritization_fee(samples)
        if fee is None:
            logger.warning("[%s] Received empty fee results", self.name)
            return None
        self.failures = 0
        previous = self.cell.peek()
        self.cell.write(fee)
        if previous != fee:
            logger.debug("[%s] Updated priority fee: %s (previous: %s)", self.name, fee, previous)
        return fee

    async def run(self) -> None:
        logger.info("[%s] Starting with percentile: %s", self.name, self.percentile)
        while True:
            await self.poll_once()
            if self.failures > self.max_failures:
                raise WatcherFailedError(self.name, self.failures, "too many failed polls")
            await self._sleep(self.interval_s)
