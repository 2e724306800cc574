import time
from pathlib import Path

import pytest

from feed.balance import BalanceWatcher, LowBalanceError
from feed.cells import FreshnessCell
from feed.subscriptions import SubscriptionManager
from feed.types import BlockRef, ConfirmationEvent
from infra.metrics import METRICS
from pinger.artifacts import SendJournal
from pinger.cycle import CONFIRMED, FAILED, ORDERING_ANOMALY, TIMED_OUT, ProbeCycleEngine
from pinger.gate import FreshnessGate, StaleStateError
from pinger.rate_limit import SendRateLimiter
from pinger.sender import SendRequestFailed
from pinger.signer import SignedProbe

HASH = "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N"
SIG = "sig-probe-1"


class FakeClock:
    def __init__(self, t: float = 500.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class DummySigner:
    address = "Wa11et1111111111111111111111111111111111111"

    def __init__(self) -> None:
        self.calls = []

    def sign(self, block, fee=None):
        self.calls.append((block, fee))
        return SignedProbe(probe_id=SIG, payload=b"probe-bytes")


class DummyTransport:
    def __init__(self, on_send=None) -> None:
        self.sent = []
        self.on_send = on_send

    async def send(self, probe):
        self.sent.append(probe.probe_id)
        if self.on_send is not None:
            self.on_send(len(self.sent))
        return probe.probe_id


class RecordingSink:
    def __init__(self) -> None:
        self.results = []

    async def report(self, result) -> None:
        self.results.append(result)


def _engine(clock, transport, *, slot_sent=1000, fee=None, wallet_mode=False, **kwargs):
    block = FreshnessCell("blockhash", clock=clock)
    slot = FreshnessCell("slot", clock=clock)
    block.write(BlockRef(HASH, 300))
    slot.write(slot_sent)
    fee_cell = None
    if fee is not None:
        fee_cell = FreshnessCell("priority_fee", clock=clock)
        fee_cell.write(fee)
    gate = FreshnessGate(block, slot, fee_cell, slot_max_age_ms=5000, clock=clock)
    subs = SubscriptionManager("wss://example.invalid")
    sink = RecordingSink()
    engine = ProbeCycleEngine(
        gate=gate,
        limiter=SendRateLimiter(10, clock=clock),
        signer=DummySigner(),
        transport=transport,
        subscriptions=subs,
        sinks=[sink],
        wallet_mode=wallet_mode,
        clock=clock,
        **kwargs,
    )
    return engine, subs, sink


@pytest.mark.asyncio
async def test_confirmed_probe_reports_time_and_slot_latency() -> None:
    clock = FakeClock(500.0)
    holder = {}

    def land(_n):
        clock.t += 1.4
        holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 1003, True))

    transport = DummyTransport(land)
    engine, subs, sink = _engine(clock, transport, slot_sent=1000, fee=2500)
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.outcome == CONFIRMED
    assert report.time_latency_ms == 1400
    assert report.resends == 0
    assert len(sink.results) == 1
    result = sink.results[0]
    assert result.time_latency_ms == 1400
    assert result.slot_latency == 3
    assert result.slot_sent == 1000
    assert result.slot_landed == 1003
    assert result.fee_estimate == 2500
    assert result.probe_id == SIG
    assert len(engine.pending) == 0
    assert subs.active_filters == {}


@pytest.mark.asyncio
async def test_events_for_other_probes_are_discarded() -> None:
    clock = FakeClock()
    holder = {}

    def land(_n):
        q = holder["subs"].events
        q.put_nowait(ConfirmationEvent("someone-else", 999, True))
        q.put_nowait(ConfirmationEvent("older-probe", 1500, False))
        q.put_nowait(ConfirmationEvent(SIG, 1002, True))

    engine, subs, sink = _engine(clock, DummyTransport(land))
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.outcome == CONFIRMED
    assert report.slot_landed == 1002
    assert sink.results[0].slot_latency == 2
    assert subs.events.empty()


@pytest.mark.asyncio
async def test_timeout_resends_same_probe_and_reports_nothing() -> None:
    transport = DummyTransport()
    engine, subs, sink = _engine(
        time.monotonic,
        transport,
        timeout_s=0.35,
        resend_interval_ms=60,
    )

    report = await engine.run_cycle()

    assert report.outcome == TIMED_OUT
    assert report.resends >= 2
    assert len(transport.sent) == 1 + report.resends
    assert set(transport.sent) == {SIG}
    assert sink.results == []
    assert len(engine.pending) == 0
    assert engine.limiter.in_window() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("landing_send", [2, 3])
async def test_confirmation_after_resends_still_reports_once(landing_send: int) -> None:
    holder = {}

    def land(n):
        if n == landing_send:
            holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 1002, True))

    transport = DummyTransport(land)
    engine, subs, sink = _engine(time.monotonic, transport, timeout_s=2.0, resend_interval_ms=50)
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.outcome == CONFIRMED
    assert report.resends == landing_send - 1
    assert transport.sent == [SIG] * landing_send
    assert len(sink.results) == 1
    assert sink.results[0].slot_latency == 2
    assert len(engine.pending) == 0


@pytest.mark.asyncio
async def test_resends_tick_at_fixed_offsets_from_initial_send() -> None:
    class SkewClock:
        def __init__(self) -> None:
            self.skew = 0.0

        def __call__(self) -> float:
            return time.monotonic() + self.skew

    clock = SkewClock()

    class SlowFirstSend(DummyTransport):
        def __init__(self) -> None:
            super().__init__()
            self.stamps = []

        async def send(self, probe):
            self.stamps.append(clock())
            if len(self.stamps) == 1:
                # the initial send takes 150ms of the first interval
                clock.skew += 0.15
            return await super().send(probe)

    transport = SlowFirstSend()
    engine, _, sink = _engine(clock, transport, timeout_s=0.7, resend_interval_ms=200)

    report = await engine.run_cycle()

    assert report.outcome == TIMED_OUT
    assert report.resends == 3
    offsets = [t - transport.stamps[0] for t in transport.stamps[1:]]
    for k, offset in enumerate(offsets, start=1):
        assert k * 0.2 - 0.005 <= offset < k * 0.2 + 0.1
    assert sink.results == []


@pytest.mark.asyncio
async def test_landed_before_sent_slot_is_suppressed() -> None:
    clock = FakeClock()
    holder = {}
    engine, subs, sink = _engine(
        clock,
        DummyTransport(lambda _n: holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 998, True))),
        slot_sent=1000,
    )
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.outcome == ORDERING_ANOMALY
    assert report.result is None
    assert sink.results == []


@pytest.mark.asyncio
async def test_failed_transaction_is_logged_not_reported() -> None:
    clock = FakeClock()
    holder = {}
    engine, subs, sink = _engine(
        clock,
        DummyTransport(lambda _n: holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 1001, False))),
    )
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.outcome == FAILED
    assert sink.results == []


@pytest.mark.asyncio
async def test_failed_initial_send_still_waits_for_confirmation() -> None:
    clock = FakeClock()
    holder = {}

    class FlakyTransport(DummyTransport):
        async def send(self, probe):
            self.sent.append(probe.probe_id)
            holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 1001, True))
            raise SendRequestFailed("https://send.example", "connection reset")

    before = METRICS.reasons("send_fail_by_reason").get("request_failed", 0)
    engine, subs, sink = _engine(clock, FlakyTransport())
    holder["subs"] = subs

    report = await engine.run_cycle()

    assert report.sent_ok is False
    assert report.outcome == CONFIRMED
    assert len(sink.results) == 1
    assert METRICS.reasons("send_fail_by_reason")["request_failed"] == before + 1


@pytest.mark.asyncio
async def test_signature_mode_registers_filter_wallet_mode_does_not() -> None:
    clock = FakeClock()
    seen = {}

    def land(_n):
        seen["subs"].events.put_nowait(ConfirmationEvent(SIG, 1001, True))

    engine, subs, _ = _engine(clock, DummyTransport(land))
    seen["subs"] = subs
    await engine.run_cycle()
    assert subs._control.qsize() == 1

    engine, subs, _ = _engine(clock, DummyTransport(land), wallet_mode=True)
    seen["subs"] = subs
    await engine.run_cycle()
    assert subs._control.qsize() == 0


@pytest.mark.asyncio
async def test_low_balance_stops_before_sending() -> None:
    clock = FakeClock()
    transport = DummyTransport()
    balance_cell = FreshnessCell("balance", clock=clock)
    balance_cell.write(1_000_000)

    class NoRPC:
        async def get_balance(self, _address):
            return 0

    balance = BalanceWatcher(NoRPC(), "wallet", balance_cell, min_balance_sol=0.01)
    engine, _, _ = _engine(clock, transport, balance=balance)

    with pytest.raises(LowBalanceError):
        await engine.run_cycle()
    assert transport.sent == []


@pytest.mark.asyncio
async def test_stale_state_is_fatal_for_the_cycle() -> None:
    clock = FakeClock(500.0)
    transport = DummyTransport()
    engine, _, _ = _engine(clock, transport)
    clock.t += 30.0

    with pytest.raises(StaleStateError):
        await engine.run_cycle()
    assert transport.sent == []


@pytest.mark.asyncio
async def test_initial_send_is_journaled(tmp_path: Path) -> None:
    clock = FakeClock()
    holder = {}
    journal = SendJournal(tmp_path, started_at=1700000000)
    engine, subs, _ = _engine(
        clock,
        DummyTransport(lambda _n: holder["subs"].events.put_nowait(ConfirmationEvent(SIG, 1001, True))),
        journal=journal,
    )
    holder["subs"] = subs

    await engine.run_cycle()

    lines = (tmp_path / "1700000000.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert '"sequence_number": 1' in lines[0]
    assert '"slot_sent": 1000' in lines[0]
    assert SIG in lines[0]
