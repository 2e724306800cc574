from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from feed.cells import FreshnessCell
from infra.rpc import RPCError
from pinger import config

logger = logging.getLogger(__name__)


class LowBalanceError(RuntimeError):
    def __init__(self, balance_lamports: int, min_lamports: int) -> None:
        super().__init__(
            f"wallet balance {balance_lamports / config.LAMPORTS_PER_SOL:.9f} SOL "
            f"is below minimum {min_lamports / config.LAMPORTS_PER_SOL:.9f} SOL"
        )
        self.balance_lamports = balance_lamports
        self.min_lamports = min_lamports


class BalanceWatcher:
    """Polls the payer balance; ``check()`` raises once it is below the floor."""

    name = "Balance Watcher"

    def __init__(
        self,
        rpc: Any,
        address: str,
        cell: FreshnessCell[int],
        *,
        min_balance_sol: float,
        interval_s: float = config.BALANCE_POLL_INTERVAL_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.address = str(address)
        self.cell = cell
        self.min_lamports = int(round(float(min_balance_sol) * config.LAMPORTS_PER_SOL))
        self.interval_s = float(interval_s)
        self._sleep = sleep

    def check(self) -> None:
        balance = self.cell.peek()
        if balance is not None and balance < self.min_lamports:
            raise LowBalanceError(balance, self.min_lamports)

    async def poll_once(self) -> Optional[int]:
        try:
            lamports = await self.rpc.get_balance(self.address)
        except RPCError as e:
            logger.warning("[%s] getBalance failed: %s", self.name, e)
            return None
        self.cell.write(lamports)
        logger.debug("[%s] Balance %s lamports", self.name, lamports)
        return lamports

    async def run(self) -> None:
        while True:
            await self.poll_once()
            await self._sleep(self.interval_s)
