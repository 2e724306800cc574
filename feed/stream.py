from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import websockets

from feed.cells import FreshnessCell
from feed.pubsub import DecodeError, Frame, subscription_error
from infra.metrics import METRICS
from pinger import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

Connector = Callable[..., Any]
Sleeper = Callable[[float], Awaitable[Any]]


class WatcherFailedError(RuntimeError):
    """A watcher gave up after too many consecutive reconnects."""

    def __init__(self, name: str, reconnects: int, last_error: Optional[str] = None) -> None:
        super().__init__(f"{name} watcher failed after {reconnects} consecutive reconnects: {last_error}")
        self.name = name
        self.reconnects = reconnects
        self.last_error = last_error


class StreamClosed(ConnectionError):
    """Server ended the stream or rejected the subscription."""


def ws_connect(url: str, headers: Optional[Dict[str, str]] = None) -> Any:
    return websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=20,
        additional_headers=headers or None,
        max_size=None,
    )


def stream_headers(x_token: Optional[str]) -> Dict[str, str]:
    return {"x-token": x_token} if x_token else {}


class ReconnectPolicy:
    """Fixed-delay reconnects with a ceiling on consecutive failures."""

    def __init__(
        self,
        name: str,
        *,
        delay_s: float = config.WATCHER_RECONNECT_DELAY_S,
        max_reconnects: int = config.WATCHER_MAX_RECONNECTS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.name = name
        self.delay_s = float(delay_s)
        self.max_reconnects = int(max_reconnects)
        self._sleep = sleep
        self.consecutive = 0
        self.total = 0

    def healthy(self) -> None:
        self.consecutive = 0

    async def backoff(self, last_error: Optional[str]) -> None:
        self.consecutive += 1
        self.total += 1
        METRICS.inc("watcher_reconnects_total", 1)
        METRICS.inc_reason("watcher_reconnects", self.name, 1)
        if self.consecutive > self.max_reconnects:
            raise WatcherFailedError(self.name, self.consecutive - 1, last_error)
        logger.warning(
            "[%s] Stream disconnected (%s), reconnecting in %.1fs (%d/%d)",
            self.name,
            last_error,
            self.delay_s,
            self.consecutive,
            self.max_reconnects,
        )
        await self._sleep(self.delay_s)


class StreamWatcher(Generic[T]):
    """Keeps one pubsub subscription alive and feeds decoded values into a cell.

    Subclasses provide ``subscribe_message`` and ``decode``. By default a value
    equal to the one already in the cell still refreshes the timestamp; set
    ``write_on_change_only`` to skip repeats.
    """

    name = "Stream Watcher"
    write_on_change_only = False

    def __init__(
        self,
        url: str,
        cell: FreshnessCell[T],
        *,
        commitment: str = "confirmed",
        headers: Optional[Dict[str, str]] = None,
        connect: Connector = ws_connect,
        reconnect_delay_s: float = config.WATCHER_RECONNECT_DELAY_S,
        max_reconnects: int = config.WATCHER_MAX_RECONNECTS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.url = str(url).strip()
        self.cell = cell
        self.commitment = commitment
        self.headers = dict(headers or {})
        self._connect = connect
        self.policy = ReconnectPolicy(
            self.name, delay_s=reconnect_delay_s, max_reconnects=max_reconnects, sleep=sleep
        )
        self.messages = 0
        self.decode_errors = 0

    def subscribe_message(self, req_id: int) -> Dict[str, Any]:
        raise NotImplementedError

    def decode(self, raw: Frame) -> Optional[T]:
        raise NotImplementedError

    def is_change(self, old: Optional[T], new: T) -> bool:
        return old != new

    def handle(self, raw: Frame) -> bool:
        """Decode one frame and update the cell. Returns True if the cell was written."""
        self.messages += 1
        try:
            err = subscription_error(raw)
            if err is not None:
                raise StreamClosed(f"subscription rejected: {err[1]}")
            value = self.decode(raw)
        except DecodeError as e:
            self.decode_errors += 1
            METRICS.inc_reason("watcher_decode_errors", self.name, 1)
            logger.error("[%s] Failed to decode update: %s", self.name, e)
            return False
        if value is None:
            return False
        self.policy.healthy()
        if self.write_on_change_only and not self.is_change(self.cell.peek(), value):
            return False
        self.cell.write(value)
        return True

    async def _consume(self) -> None:
        async with self._connect(self.url, self.headers) as ws:
            await ws.send(json.dumps(self.subscribe_message(1)))
            logger.info("[%s] Subscribed on %s", self.name, self.url)
            while True:
                raw = await ws.recv()
                if not raw:
                    continue
                self.handle(raw)

    async def run(self) -> None:
        """Run until cancelled; raises WatcherFailedError past the reconnect ceiling."""
        while True:
            try:
                await self._consume()
                last_error = "stream ended"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            await self.policy.backoff(last_error)
