from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from feed.cells import CellSnapshot, FreshnessCell
from feed.types import BlockRef
from pinger import config

logger = logging.getLogger(__name__)


class StaleStateError(RuntimeError):
    """A required cell has not been refreshed within the fatal bound."""

    def __init__(self, cell: str, age_s: float, bound_s: float) -> None:
        super().__init__(f"{cell} is stale: {age_s:.1f}s old (fatal bound {bound_s:.1f}s)")
        self.cell = cell
        self.age_s = age_s
        self.bound_s = bound_s


@dataclass(frozen=True)
class GateSnapshot:
    block: BlockRef
    slot: int
    fee: Optional[int]
    taken_at: float
    ages_s: Tuple[Tuple[str, float], ...] = ()


class FreshnessGate:
    """Waits until every required cell is fresh at the same instant.

    The fee cell is only required when one is given. Cells older than
    ``stale_fatal_s`` raise StaleStateError; the caller is expected to let it
    take the process down.
    """

    def __init__(
        self,
        block_cell: FreshnessCell[BlockRef],
        slot_cell: FreshnessCell[int],
        fee_cell: Optional[FreshnessCell[int]] = None,
        *,
        blockhash_max_age_ms: int = config.BLOCKHASH_MAX_AGE_MS,
        slot_max_age_ms: int = config.SLOT_MAX_AGE_MS,
        fee_max_age_ms: int = config.FEE_MAX_AGE_MS,
        stale_fatal_s: float = config.STALE_FATAL_S,
        retry_ms: int = config.GATE_RETRY_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._required: List[Tuple[FreshnessCell[Any], float]] = [
            (block_cell, blockhash_max_age_ms / 1000.0),
            (slot_cell, slot_max_age_ms / 1000.0),
        ]
        if fee_cell is not None:
            self._required.append((fee_cell, fee_max_age_ms / 1000.0))
        self.stale_fatal_s = float(stale_fatal_s)
        self.retry_s = max(0.0, retry_ms / 1000.0)
        self._clock = clock
        self._sleep = sleep
        self.attempts = 0

    def check(self, now_s: Optional[float] = None) -> Optional[GateSnapshot]:
        """One pass over the cells: a snapshot if all are fresh, else None."""
        now = float(now_s if now_s is not None else self._clock())
        snaps: List[CellSnapshot[Any]] = []
        fresh = True
        for cell, max_age_s in self._required:
            snap = cell.read(now)
            if snap.age_s >= self.stale_fatal_s:
                raise StaleStateError(snap.name, snap.age_s, self.stale_fatal_s)
            if not snap.is_fresh(max_age_s):
                fresh = False
            snaps.append(snap)
        if not fresh:
            return None
        return GateSnapshot(
            block=snaps[0].value,
            slot=snaps[1].value,
            fee=snaps[2].value if len(snaps) > 2 else None,
            taken_at=now,
            ages_s=tuple((s.name, s.age_s) for s in snaps),
        )

    async def wait(self) -> GateSnapshot:
        self.attempts = 0
        while True:
            self.attempts += 1
            snap = self.check()
            if snap is not None:
                if self.attempts > 1:
                    logger.debug("[Gate] Fresh state after %d attempts", self.attempts)
                return snap
            await self._sleep(self.retry_s)
