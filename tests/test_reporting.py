import aiohttp
import pytest

from infra.prom import ProbeMetrics, confirmation_latency_buckets, slot_latency_buckets, start_metrics_server
from pinger.reporting import ProbeResult, PrometheusSink, ValidatorsAppSink, report_all

RESULT = ProbeResult(
    probe_id="SigOk",
    time_latency_ms=1400,
    slot_latency=3,
    slot_sent=1000,
    slot_landed=1003,
    fee_estimate=2500,
)


class DummyResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    async def text(self) -> str:
        return "nope"

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        return False


class DummySession:
    closed = False

    def __init__(self, status: int = 201, exc: Exception = None) -> None:
        self.status = status
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers})
        if self.exc is not None:
            raise self.exc
        return DummyResponse(self.status)


def _va(session: DummySession) -> ValidatorsAppSink:
    return ValidatorsAppSink(
        "va-key",
        endpoint="https://va.example/api/v1/ping-thing/mainnet",
        commitment="confirmed",
        pinger_region="fra",
        priority_fee_percentile=5000,
        session=session,
    )


def test_validators_app_payload_fields() -> None:
    payload = _va(DummySession()).payload(RESULT)
    assert payload == {
        "time": 1400,
        "signature": "SigOk",
        "transaction_type": "transfer",
        "success": True,
        "application": "web3",
        "commitment_level": "confirmed",
        "slot_sent": "1000",
        "slot_landed": "1003",
        "priority_fee_micro_lamports": "2500",
        "priority_fee_percentile": 50,
        "pinger_region": "fra",
    }


@pytest.mark.asyncio
async def test_validators_app_posts_with_token_header() -> None:
    session = DummySession(status=201)
    await _va(session).report(RESULT)
    assert session.calls[0]["headers"] == {"Token": "va-key"}
    assert session.calls[0]["url"].endswith("/ping-thing/mainnet")
    assert session.calls[0]["json"]["signature"] == "SigOk"


@pytest.mark.asyncio
async def test_validators_app_failures_are_not_raised_or_retried() -> None:
    bad_status = DummySession(status=500)
    await _va(bad_status).report(RESULT)
    assert len(bad_status.calls) == 1

    broken = DummySession(exc=aiohttp.ClientConnectionError("down"))
    await _va(broken).report(RESULT)
    assert len(broken.calls) == 1


def test_latency_buckets() -> None:
    buckets = confirmation_latency_buckets()
    assert buckets[:3] == [0.0, 50.0, 100.0]
    assert 1000.0 in buckets and 1100.0 in buckets and 2200.0 in buckets
    assert 1050.0 not in buckets and 2100.0 not in buckets
    assert buckets[-1] == 10000.0
    assert buckets == sorted(buckets)
    assert slot_latency_buckets() == [float(i) for i in range(1, 31)]


@pytest.mark.asyncio
async def test_prometheus_sink_records_both_histograms() -> None:
    metrics = ProbeMetrics()
    sinks = [PrometheusSink(metrics, "probe-a")]
    await report_all(sinks, RESULT)
    labels = {"pinger_name": "probe-a"}
    reg = metrics.registry
    assert reg.get_sample_value("ping_thing_client_confirmation_latency_count", labels) == 1.0
    assert reg.get_sample_value("ping_thing_client_confirmation_latency_sum", labels) == 1400.0
    assert reg.get_sample_value("ping_thing_client_slot_latency_sum", labels) == 3.0
    assert reg.get_sample_value("ping_thing_client_slot_latency_bucket", {**labels, "le": "3.0"}) == 1.0
    assert reg.get_sample_value("ping_thing_client_slot_latency_bucket", {**labels, "le": "2.0"}) == 0.0


@pytest.mark.asyncio
async def test_metrics_endpoint_serves_text_exposition() -> None:
    metrics = ProbeMetrics()
    metrics.observe("probe-b", time_latency_ms=250, slot_latency=1)
    runner = await start_metrics_server(metrics, "127.0.0.1", 0)
    try:
        port = runner.addresses[0][1]
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{port}/metrics") as resp:
                assert resp.status == 200
                assert resp.headers["Content-Type"].startswith("text/plain")
                body = await resp.text()
        assert 'ping_thing_client_confirmation_latency_count{pinger_name="probe-b"} 1.0' in body
    finally:
        await runner.cleanup()
