from __future__ import annotations

import logging
from typing import List, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Histogram, generate_latest

logger = logging.getLogger(__name__)


def confirmation_latency_buckets() -> List[float]:
    """Millisecond buckets: 50ms steps to 1s, 100ms to 2s, 200ms to 10s."""
    buckets: List[float] = [float(i) for i in range(0, 1001, 50)]
    buckets.extend(float(i) for i in range(1100, 2001, 100))
    buckets.extend(float(i) for i in range(2200, 10001, 200))
    return buckets


def slot_latency_buckets() -> List[float]:
    return [float(i) for i in range(1, 31)]


class ProbeMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.confirmation_latency = Histogram(
            "ping_thing_client_confirmation_latency",
            "Solana transaction confirmation latency in milliseconds",
            labelnames=("pinger_name",),
            buckets=confirmation_latency_buckets(),
            registry=self.registry,
        )
        self.slot_latency = Histogram(
            "ping_thing_client_slot_latency",
            "Difference between landed slot and sent slot",
            labelnames=("pinger_name",),
            buckets=slot_latency_buckets(),
            registry=self.registry,
        )

    def observe(self, pinger_name: str, *, time_latency_ms: float, slot_latency: int) -> None:
        self.confirmation_latency.labels(pinger_name=pinger_name).observe(float(time_latency_ms))
        self.slot_latency.labels(pinger_name=pinger_name).observe(float(slot_latency))

    def render(self) -> bytes:
        return generate_latest(self.registry)


async def start_metrics_server(metrics: ProbeMetrics, host: str, port: int) -> web.AppRunner:
    """Serve the registry on GET /metrics; returns the runner so callers can clean up."""
    app = web.Application()

    async def handle_metrics(request: web.Request) -> web.Response:
        logger.debug("[Metrics] Handling /metrics request")
        resp = web.Response(body=metrics.render())
        resp.headers["Content-Type"] = CONTENT_TYPE_LATEST
        return resp

    app.add_routes([web.get("/metrics", handle_metrics)])
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, int(port))
    await site.start()
    logger.info("[Metrics] Prometheus metrics server listening on http://%s:%s/metrics", host, port)
    return runner
