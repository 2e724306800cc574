from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from feed.balance import BalanceWatcher
from feed.cells import PendingProbes
from feed.subscriptions import SubscriptionManager
from feed.types import ConfirmationEvent, PendingProbe, SubscriptionFilter
from infra.metrics import METRICS
from pinger import config
from pinger.artifacts import SendJournal
from pinger.gate import FreshnessGate
from pinger.rate_limit import SendRateLimiter
from pinger.reporting import ProbeResult, ResultSink, report_all
from pinger.sender import SendError
from pinger.signer import ProbeSigner, SignedProbe

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
FAILED = "failed"
TIMED_OUT = "timed_out"
ORDERING_ANOMALY = "ordering_anomaly"


@dataclass(frozen=True)
class CycleReport:
    probe_id: str
    outcome: str
    resends: int
    time_latency_ms: int
    slot_sent: int
    slot_landed: Optional[int] = None
    sent_ok: bool = True
    result: Optional[ProbeResult] = None


class ProbeCycleEngine:
    """Runs probe cycles one at a time.

    Each cycle waits for fresh state, sends one canary, then races the
    confirmation stream against the resend tick and the cycle deadline. Only
    confirmed, successful probes with a non-negative slot latency reach the
    sinks.
    """

    def __init__(
        self,
        *,
        gate: FreshnessGate,
        limiter: SendRateLimiter,
        signer: ProbeSigner,
        transport: Any,
        subscriptions: SubscriptionManager,
        sinks: Optional[List[ResultSink]] = None,
        pending: Optional[PendingProbes] = None,
        wallet_mode: bool = False,
        timeout_s: float = config.TX_CONFIRMATION_TIMEOUT_S,
        resend_interval_ms: int = config.TX_RESEND_INTERVAL_MS,
        sleep_ms_loop: int = 0,
        balance: Optional[BalanceWatcher] = None,
        journal: Optional[SendJournal] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gate = gate
        self.limiter = limiter
        self.signer = signer
        self.transport = transport
        self.subscriptions = subscriptions
        self.sinks = list(sinks or [])
        self.pending = pending if pending is not None else PendingProbes()
        self.wallet_mode = bool(wallet_mode)
        self.timeout_s = float(timeout_s)
        self.resend_interval_s = float(resend_interval_ms) / 1000.0
        self.sleep_s = max(0.0, float(sleep_ms_loop) / 1000.0)
        self.balance = balance
        self.journal = journal
        self._clock = clock
        self._sleep = sleep
        self.cycles = 0

    async def _send(self, probe: SignedProbe, *, resend: bool) -> bool:
        label = "resend" if resend else "initial"
        try:
            await self.transport.send(probe)
        except SendError as e:
            METRICS.inc_reason("send_fail_by_reason", e.reason, 1)
            logger.error("[TX] Failed %s send for %s: %s", label, probe.probe_id, e)
            return False
        METRICS.inc("probes_resent" if resend else "probes_sent", 1)
        logger.debug("[TX] %s send ok for %s", label, probe.probe_id)
        return True

    async def _await_confirmation(
        self, probe: SignedProbe, send_time: float
    ) -> Tuple[Optional[ConfirmationEvent], int]:
        """Race deadline / matching event / resend tick. Returns (event or None, resends)."""
        deadline = send_time + self.timeout_s
        next_resend = send_time + self.resend_interval_s
        resends = 0
        events = self.subscriptions.events
        while True:
            now = self._clock()
            if now >= deadline:
                return None, resends
            wait_s = max(0.0, min(deadline, next_resend) - now)
            try:
                event = await asyncio.wait_for(events.get(), timeout=wait_s)
            except asyncio.TimeoutError:
                now = self._clock()
                if now >= deadline:
                    return None, resends
                if now >= next_resend:
                    logger.info("[TX] Resending transaction: %s", probe.probe_id)
                    resends += 1
                    await self._send(probe, resend=True)
                    while next_resend <= now:
                        next_resend += self.resend_interval_s
                continue
            if event.probe_id != probe.probe_id:
                logger.debug(
                    "[TX] Received confirmation for different transaction: %s, current: %s",
                    event.probe_id,
                    probe.probe_id,
                )
                continue
            return event, resends

    async def run_cycle(self) -> CycleReport:
        if self.sleep_s > 0:
            await self._sleep(self.sleep_s)
        if self.balance is not None:
            self.balance.check()
        await self.limiter.acquire()
        snap = await self.gate.wait()

        probe = self.signer.sign(snap.block, snap.fee)
        self.cycles += 1
        logger.info("[TX] Cycle %d: sending %s at slot %s", self.cycles, probe.probe_id, snap.slot)

        send_time = self._clock()
        sent_ok = await self._send(probe, resend=False)
        self.pending.add(PendingProbe(probe_id=probe.probe_id, slot_sent=snap.slot, send_time=send_time))
        if self.journal is not None:
            self.journal.record(snap.slot, probe.probe_id)
        if not self.wallet_mode:
            self.subscriptions.register_filter(SubscriptionFilter.for_signature(probe.probe_id))

        try:
            event, resends = await self._await_confirmation(probe, send_time)
            stored = self.pending.get(probe.probe_id)
            slot_sent = stored.slot_sent if stored is not None else snap.slot
            started = stored.send_time if stored is not None else send_time
            time_latency_ms = int(round((self._clock() - started) * 1000.0))
            report = self._conclude(probe, event, resends, time_latency_ms, slot_sent, snap.fee, sent_ok)
        finally:
            self.pending.pop(probe.probe_id)
            self.subscriptions.forget(probe.probe_id)

        METRICS.inc_reason("cycles_by_outcome", report.outcome, 1)
        if report.result is not None:
            METRICS.observe("time_latency_ms", report.time_latency_ms)
            await report_all(self.sinks, report.result)
        return report

    def _conclude(
        self,
        probe: SignedProbe,
        event: Optional[ConfirmationEvent],
        resends: int,
        time_latency_ms: int,
        slot_sent: int,
        fee: Optional[int],
        sent_ok: bool,
    ) -> CycleReport:
        if event is None:
            logger.warning(
                "[TX] Transaction %s not confirmed after %.0fs (%d resends)",
                probe.probe_id,
                self.timeout_s,
                resends,
            )
            return CycleReport(probe.probe_id, TIMED_OUT, resends, time_latency_ms, slot_sent, sent_ok=sent_ok)

        if not event.success:
            logger.warning("[TX] Transaction %s landed in slot %s with an error", probe.probe_id, event.slot_landed)
            return CycleReport(
                probe.probe_id, FAILED, resends, time_latency_ms, slot_sent, event.slot_landed, sent_ok
            )

        if event.slot_landed < slot_sent:
            logger.error(
                "[TX] ERROR: Slot %s < %s for %s. Not reporting",
                event.slot_landed,
                slot_sent,
                probe.probe_id,
            )
            return CycleReport(
                probe.probe_id, ORDERING_ANOMALY, resends, time_latency_ms, slot_sent, event.slot_landed, sent_ok
            )

        slot_latency = event.slot_landed - slot_sent
        logger.info(
            "[TX] Transaction confirmed - Signature: %s, Slot latency: %d (landed: %d, sent: %d), Time latency: %dms",
            probe.probe_id,
            slot_latency,
            event.slot_landed,
            slot_sent,
            time_latency_ms,
        )
        result = ProbeResult(
            probe_id=probe.probe_id,
            time_latency_ms=time_latency_ms,
            slot_latency=slot_latency,
            slot_sent=slot_sent,
            slot_landed=event.slot_landed,
            fee_estimate=fee,
        )
        return CycleReport(
            probe.probe_id, CONFIRMED, resends, time_latency_ms, slot_sent, event.slot_landed, sent_ok, result
        )

    async def run_forever(self) -> None:
        if self.wallet_mode:
            self.subscriptions.register_filter(SubscriptionFilter.for_address(self.signer.address))
        while True:
            await self.run_cycle()
