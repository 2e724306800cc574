import asyncio
import json

import pytest

from feed.balance import BalanceWatcher, LowBalanceError
from feed.blockhash import BlockhashWatcher
from feed.cells import FreshnessCell
from feed.fees import FeeWatcher, max_prioritization_fee
from feed.slot import SlotWatcher
from feed.stream import WatcherFailedError, stream_headers
from infra.rpc import RPCError

HASH_A = "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N"
HASH_B = "11111111111111111111111111111111"


class FakeClock:
    def __init__(self, t: float = 10.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def _block(blockhash: str, height: int) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "method": "blockNotification",
            "params": {
                "result": {"context": {"slot": 1}, "value": {"slot": 1, "err": None, "block": {"blockhash": blockhash, "blockHeight": height}}},
                "subscription": 1,
            },
        }
    )


def _slot(kind: str, slot: int) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "method": "slotsUpdatesNotification",
            "params": {"result": {"type": kind, "slot": slot, "timestamp": 0}, "subscription": 2},
        }
    )


class ScriptedWS:
    """Replays frames, then drops the connection."""

    def __init__(self, frames) -> None:
        self.frames = list(frames)
        self.sent = []

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def recv(self):
        await asyncio.sleep(0)
        if not self.frames:
            raise ConnectionError("closed by server")
        return self.frames.pop(0)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        return False


async def _no_sleep(_s: float) -> None:
    await asyncio.sleep(0)


def test_blockhash_writes_only_on_new_hash() -> None:
    clock = FakeClock(10.0)
    cell = FreshnessCell("blockhash", clock=clock)
    watcher = BlockhashWatcher("wss://feed.example", cell)
    assert watcher.handle(_block(HASH_A, 100)) is True
    clock.t = 11.0
    assert watcher.handle(_block(HASH_A, 101)) is False
    assert cell.read().updated_at == 10.0
    assert cell.peek().last_valid_block_height == 100
    assert watcher.handle(_block(HASH_B, 102)) is True
    assert cell.peek().blockhash == HASH_B
    assert cell.read().updated_at == 11.0


def test_decode_failure_is_skipped_without_touching_cell() -> None:
    clock = FakeClock()
    cell = FreshnessCell("blockhash", clock=clock)
    watcher = BlockhashWatcher("wss://feed.example", cell)
    assert watcher.handle(_block("zzzz", 1)) is False
    assert watcher.handle("{nope") is False
    assert watcher.decode_errors == 2
    assert cell.peek() is None
    assert cell.writes == 0


def test_slot_watcher_only_counts_first_shred() -> None:
    clock = FakeClock(10.0)
    cell = FreshnessCell("slot", clock=clock)
    watcher = SlotWatcher("wss://feed.example", cell)
    assert watcher.handle(_slot("completed", 50)) is False
    assert cell.peek() is None
    assert watcher.handle(_slot("firstShredReceived", 51)) is True
    clock.t = 10.3
    assert watcher.handle(_slot("firstShredReceived", 51)) is True
    assert cell.read().updated_at == 10.3
    assert watcher.subscribe_message(1)["method"] == "slotsUpdatesSubscribe"


@pytest.mark.asyncio
async def test_watcher_reconnects_then_gives_up() -> None:
    cell = FreshnessCell("slot")
    sockets = [
        ScriptedWS(['{"jsonrpc":"2.0","id":1,"result":5}', _slot("firstShredReceived", 7)]),
        ScriptedWS([_slot("firstShredReceived", 8)]),
        ScriptedWS([]),
        ScriptedWS([]),
    ]
    calls = []

    def connect(url, headers=None):
        calls.append(headers)
        return sockets.pop(0)

    watcher = SlotWatcher(
        "wss://feed.example",
        cell,
        headers=stream_headers("secret"),
        connect=connect,
        max_reconnects=2,
        sleep=_no_sleep,
    )
    with pytest.raises(WatcherFailedError) as info:
        await asyncio.wait_for(watcher.run(), 1.0)
    assert cell.peek() == 8
    assert len(calls) == 4
    assert calls[0] == {"x-token": "secret"}
    assert info.value.name == "Slot Watcher"
    assert watcher.policy.total == 4


def test_stream_headers() -> None:
    assert stream_headers(None) == {}
    assert stream_headers("tok") == {"x-token": "tok"}


def test_max_prioritization_fee() -> None:
    samples = [
        {"slot": 1, "prioritizationFee": 0},
        {"slot": 2, "prioritizationFee": 12000},
        {"slot": 3, "prioritizationFee": 800},
        {"slot": 4},
    ]
    assert max_prioritization_fee(samples) == 12000
    assert max_prioritization_fee([]) is None


class DummyFeeRPC:
    def __init__(self, results) -> None:
        self.results = list(results)
        self.percentiles = []

    async def get_recent_prioritization_fees(self, *, percentile=None):
        self.percentiles.append(percentile)
        item = self.results.pop(0) if self.results else RPCError("getRecentPrioritizationFees", "timeout")
        if isinstance(item, Exception):
            raise item
        return item


@pytest.mark.asyncio
async def test_fee_watcher_polls_max_and_refreshes() -> None:
    clock = FakeClock(1.0)
    cell = FreshnessCell("priority_fee", clock=clock)
    rpc = DummyFeeRPC(
        [
            [{"slot": 1, "prioritizationFee": 100}, {"slot": 2, "prioritizationFee": 300}],
            [],
            RPCError("getRecentPrioritizationFees", "http_503"),
            [{"slot": 3, "prioritizationFee": 300}],
        ]
    )
    watcher = FeeWatcher(rpc, cell, percentile=5000)
    assert await watcher.poll_once() == 300
    assert await watcher.poll_once() is None
    assert await watcher.poll_once() is None
    assert watcher.failures == 1
    clock.t = 2.0
    assert await watcher.poll_once() == 300
    assert watcher.failures == 0
    assert cell.read().updated_at == 2.0
    assert rpc.percentiles == [5000] * 4


@pytest.mark.asyncio
async def test_fee_watcher_fails_after_repeated_errors() -> None:
    watcher = FeeWatcher(DummyFeeRPC([]), FreshnessCell("priority_fee"), max_failures=3, sleep=_no_sleep)
    with pytest.raises(WatcherFailedError):
        await asyncio.wait_for(watcher.run(), 1.0)
    assert watcher.failures == 4


@pytest.mark.asyncio
async def test_balance_watcher_check() -> None:
    class DummyBalanceRPC:
        def __init__(self) -> None:
            self.balances = [50_000_000, 1_000]

        async def get_balance(self, address):
            return self.balances.pop(0)

    cell = FreshnessCell("balance")
    watcher = BalanceWatcher(DummyBalanceRPC(), "Wallet1", cell, min_balance_sol=0.01)
    watcher.check()
    assert await watcher.poll_once() == 50_000_000
    watcher.check()
    await watcher.poll_once()
    with pytest.raises(LowBalanceError) as info:
        watcher.check()
    assert info.value.balance_lamports == 1_000
    assert info.value.min_lamports == 10_000_000
