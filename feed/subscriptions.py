from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

from feed.pubsub import (
    DecodeError,
    Frame,
    decode_logs_update,
    decode_signature_update,
    logs_subscribe,
    signature_subscribe,
    signature_unsubscribe,
    subscription_ack,
    subscription_error,
)
from feed.stream import Connector, ReconnectPolicy, Sleeper, ws_connect
from feed.types import ConfirmationEvent, SubscriptionFilter
from infra.metrics import METRICS
from pinger import config

logger = logging.getLogger(__name__)

# A filter to subscribe, or the server id of a signature subscription to drop.
ControlItem = Union[SubscriptionFilter, int]


class SubscriptionManager:
    """One long-lived confirmation stream shared by every probe.

    ``register_filter`` and ``forget`` only enqueue onto the control queue; the
    writer task owns the send half of the socket and the reader task turns
    transaction updates into ConfirmationEvents on ``events``. When the stream
    drops it is reopened in place and every filter still in
    ``active_filters`` is subscribed again.
    """

    name = "Subscription Manager"

    def __init__(
        self,
        url: str,
        *,
        commitment: str = "confirmed",
        headers: Optional[Dict[str, str]] = None,
        connect: Connector = ws_connect,
        reconnect_delay_s: float = config.WATCHER_RECONNECT_DELAY_S,
        max_reconnects: int = config.WATCHER_MAX_RECONNECTS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.url = str(url).strip()
        self.commitment = commitment
        self.headers = dict(headers or {})
        self._connect = connect
        self.policy = ReconnectPolicy(
            self.name, delay_s=reconnect_delay_s, max_reconnects=max_reconnects, sleep=sleep
        )
        self.events: asyncio.Queue[ConfirmationEvent] = asyncio.Queue()
        self._control: asyncio.Queue[ControlItem] = asyncio.Queue()
        self._filters: Dict[str, SubscriptionFilter] = {}
        self._awaiting_ack: Dict[int, SubscriptionFilter] = {}
        self._by_sub_id: Dict[int, SubscriptionFilter] = {}
        self._sub_id_by_signature: Dict[str, int] = {}
        self._req_id = 0

    @property
    def active_filters(self) -> Dict[str, SubscriptionFilter]:
        return dict(self._filters)

    def register_filter(self, flt: SubscriptionFilter) -> None:
        self._filters[flt.key] = flt
        self._control.put_nowait(flt)

    def forget(self, probe_id: str) -> None:
        """Drop a signature filter and its server subscription, if one is open."""
        self._filters.pop(SubscriptionFilter.for_signature(probe_id).key, None)
        sub_id = self._sub_id_by_signature.pop(probe_id, None)
        if sub_id is not None:
            self._by_sub_id.pop(sub_id, None)
            self._control.put_nowait(sub_id)

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    def _subscribe_message(self, flt: SubscriptionFilter) -> Dict[str, Any]:
        req_id = self._next_req_id()
        self._awaiting_ack[req_id] = flt
        if flt.signature:
            return signature_subscribe(req_id, flt.signature, self.commitment)
        return logs_subscribe(req_id, str(flt.address), self.commitment)

    async def _send_filter(self, ws: Any, flt: SubscriptionFilter) -> None:
        if flt.key not in self._filters:
            return
        await ws.send(json.dumps(self._subscribe_message(flt)))
        METRICS.inc("subscription_requests_total", 1)
        logger.debug("[%s] Subscribed %s", self.name, flt.key)

    async def _send_unsubscribe(self, ws: Any, sub_id: int) -> None:
        await ws.send(json.dumps(signature_unsubscribe(self._next_req_id(), sub_id)))
        METRICS.inc("subscription_cancels_total", 1)
        logger.debug("[%s] Unsubscribed %s", self.name, sub_id)

    async def _writer(self, ws: Any) -> None:
        while True:
            item = await self._control.get()
            if isinstance(item, SubscriptionFilter):
                await self._send_filter(ws, item)
            else:
                await self._send_unsubscribe(ws, item)

    def _emit(self, signature: str, slot: int, success: bool) -> ConfirmationEvent:
        event = ConfirmationEvent(probe_id=signature, slot_landed=slot, success=success)
        self.events.put_nowait(event)
        METRICS.inc("confirmation_events_total", 1)
        return event

    def _on_ack(self, req_id: int, sub_id: int) -> None:
        flt = self._awaiting_ack.pop(req_id, None)
        if flt is None:
            return
        self.policy.healthy()
        if flt.key not in self._filters:
            # forgotten while the subscribe was in flight
            if flt.signature:
                self._control.put_nowait(sub_id)
            return
        self._by_sub_id[sub_id] = flt
        if flt.signature:
            self._sub_id_by_signature[flt.signature] = sub_id

    def handle(self, raw: Frame) -> Optional[ConfirmationEvent]:
        """Process one inbound frame; returns the event it produced, if any."""
        try:
            ack = subscription_ack(raw)
            if ack is not None:
                self._on_ack(*ack)
                return None
            err = subscription_error(raw)
            if err is not None:
                flt = self._awaiting_ack.pop(err[0], None) if err[0] is not None else None
                logger.error("[%s] Subscription rejected for %s: %s", self.name, flt.key if flt else "?", err[1])
                return None
            sig_update = decode_signature_update(raw)
            if sig_update is not None:
                sub_id, slot, success = sig_update
                flt = self._by_sub_id.pop(sub_id, None)
                if flt is None or not flt.signature:
                    return None
                # the server closes a signature subscription after its notification
                self._sub_id_by_signature.pop(flt.signature, None)
                self._filters.pop(flt.key, None)
                return self._emit(flt.signature, slot, success)
            logs_update = decode_logs_update(raw)
            if logs_update is not None:
                signature, slot, success = logs_update
                return self._emit(signature, slot, success)
        except DecodeError as e:
            METRICS.inc_reason("watcher_decode_errors", self.name, 1)
            logger.error("[%s] Failed to decode update: %s", self.name, e)
        return None

    async def _reader(self, ws: Any) -> None:
        while True:
            raw = await ws.recv()
            if raw:
                self.handle(raw)

    def _drain_control(self) -> None:
        while True:
            try:
                self._control.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def _session(self) -> None:
        async with self._connect(self.url, self.headers) as ws:
            self._awaiting_ack.clear()
            self._by_sub_id.clear()
            self._sub_id_by_signature.clear()
            # Queued filters are already in _filters and queued cancels name
            # subscriptions of the previous socket.
            self._drain_control()
            for flt in list(self._filters.values()):
                await self._send_filter(ws, flt)
            logger.info("[%s] Stream open on %s (%d filters)", self.name, self.url, len(self._filters))
            tasks = [asyncio.create_task(self._writer(ws)), asyncio.create_task(self._reader(ws))]
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if exc is not None:
                    raise exc

    async def run(self) -> None:
        """Run until cancelled; raises WatcherFailedError past the reconnect ceiling."""
        while True:
            try:
                await self._session()
                last_error = "stream ended"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            await self.policy.backoff(last_error)
