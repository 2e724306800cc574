"""Result sinks.

Sink A posts each confirmed probe to the validators.app ping-thing API; sink B
records the two latency histograms served on /metrics. Sinks never raise into
the cycle: a failed post is logged and dropped, never retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from infra.metrics import METRICS
from infra.prom import ProbeMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    probe_id: str
    time_latency_ms: int
    slot_latency: int
    slot_sent: int
    slot_landed: int
    fee_estimate: Optional[int]


class ResultSink(Protocol):
    async def report(self, result: ProbeResult) -> None:
        ...


class ValidatorsAppSink:
    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str,
        commitment: str,
        pinger_region: str,
        priority_fee_percentile: int,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.endpoint = endpoint
        self.commitment = commitment
        self.pinger_region = pinger_region
        self.priority_fee_percentile = int(priority_fee_percentile)
        self.timeout_s = float(timeout_s)
        self._session = session
        self._owns_session = session is None

    def payload(self, result: ProbeResult) -> Dict[str, Any]:
        return {
            "time": int(result.time_latency_ms),
            "signature": result.probe_id,
            "transaction_type": "transfer",
            "success": True,
            "application": "web3",
            "commitment_level": self.commitment,
            "slot_sent": str(result.slot_sent),
            "slot_landed": str(result.slot_landed),
            "priority_fee_micro_lamports": str(int(result.fee_estimate or 0)),
            "priority_fee_percentile": self.priority_fee_percentile // 100,
            "pinger_region": self.pinger_region,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def report(self, result: ProbeResult) -> None:
        payload = self.payload(result)
        logger.debug("[VA] Payload %s", payload)
        session = await self._get_session()
        try:
            async with session.post(
                self.endpoint,
                json=payload,
                headers={"Token": self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                if 200 <= resp.status < 300:
                    METRICS.inc("va_reports_ok", 1)
                    logger.info("[VA] Sent result for %s", result.probe_id)
                    return
                body = await resp.text()
                METRICS.inc_reason("va_reports_fail", f"http_{resp.status}", 1)
                logger.error(
                    "[VA] Failed to send result for %s - Status: %s %s",
                    result.probe_id,
                    resp.status,
                    body[:200],
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            METRICS.inc_reason("va_reports_fail", type(e).__name__, 1)
            logger.error("[VA] Error sending result for %s: %s", result.probe_id, e)


class PrometheusSink:
    def __init__(self, metrics: ProbeMetrics, pinger_name: str) -> None:
        self.metrics = metrics
        self.pinger_name = pinger_name

    async def report(self, result: ProbeResult) -> None:
        self.metrics.observe(
            self.pinger_name,
            time_latency_ms=result.time_latency_ms,
            slot_latency=result.slot_latency,
        )


async def report_all(sinks: List[ResultSink], result: ProbeResult) -> None:
    for sink in sinks:
        await sink.report(result)
