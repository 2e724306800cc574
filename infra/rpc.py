# infra/rpc.py

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Dict, List, Optional

import aiohttp

from infra.metrics import METRICS
from pinger import config


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def _normalize_rpc_error(msg: Any) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "decode" in text or "json" in text:
        return "decode_error"
    if "rpc" in text or "http_" in text:
        return "rpc_error"
    return "internal_error"


class RPCError(Exception):
    """JSON-RPC call failed after retries (transport error or error object)."""

    def __init__(self, method: str, reason: str) -> None:
        super().__init__(f"{method} failed: {reason}")
        self.method = method
        self.reason = reason


class AsyncRPC:
    """Async JSON-RPC client with:
    - persistent aiohttp session
    - per-call timeouts clamped to the configured range
    - retries + exponential backoff for transient errors / rate limits
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = 3.0,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
    ):
        self.url = _normalize_url(url)
        self.default_timeout_s = float(default_timeout_s)
        if max_retries is None:
            max_retries = int(getattr(config, "RPC_RETRY_COUNT", 1))
        if backoff_base_s is None:
            backoff_base_s = float(getattr(config, "RPC_BACKOFF_BASE_S", 0.35))
        self.max_retries = int(max_retries)
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._connector = aiohttp.TCPConnector(limit=20, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=self._connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._connector:
            await self._connector.close()
        self._connector = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        min_t = float(getattr(config, "RPC_TIMEOUT_MIN_S", 1.0))
        max_t = float(getattr(config, "RPC_TIMEOUT_MAX_S", 10.0))
        if max_t < min_t:
            max_t = min_t
        return max(min_t, min(max_t, to_s))

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """Perform a JSON-RPC call and return its ``result``.

        Raises RPCError once every attempt has failed. An ``error`` object in
        the response body counts as a failed attempt.
        """

        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}

        session = await self._get_session()
        to_s = self._clamp_timeout(timeout_s)
        retries = self.max_retries if max_retries is None else int(max_retries)
        host = _url_host(self.url)
        last_err: Optional[str] = None

        for attempt in range(retries + 1):
            t0 = time.perf_counter()
            METRICS.inc("rpc_requests_total", 1)
            METRICS.inc_reason("rpc_requests_by_method", method, 1)
            try:
                async def _do():
                    async with session.post(self.url, json=payload) as resp:
                        if resp.status >= 400:
                            text = await resp.text()
                            raise aiohttp.ClientResponseError(
                                request_info=resp.request_info,
                                history=resp.history,
                                status=resp.status,
                                message=text,
                                headers=resp.headers,
                            )
                        return await resp.json(content_type=None)

                data = await asyncio.wait_for(_do(), timeout=to_s)

                dt_ms = (time.perf_counter() - t0) * 1000.0
                METRICS.observe(f"rpc_latency_ms:{host}", float(dt_ms))

                if not isinstance(data, dict):
                    raise ValueError("rpc response is not an object")
                if "error" in data:
                    last_err = f"rpc_error:{data['error']}"
                    raise RuntimeError(last_err)

                return data.get("result")

            except asyncio.TimeoutError:
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                last_err = f"http_{e.status}"
                if e.status not in (429, 500, 502, 503, 504):
                    break
            except (aiohttp.ClientError, RuntimeError, ValueError) as e:
                last_err = f"{type(e).__name__}: {e}"

            if attempt < retries:
                sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                if last_err and ("http_429" in last_err or "rate limit" in last_err.lower()):
                    sleep_s += float(getattr(config, "RPC_RATE_LIMIT_BACKOFF_S", 0.35))
                await asyncio.sleep(sleep_s)

        METRICS.inc_reason("rpc_fail_by_reason", _normalize_rpc_error(last_err), 1)
        raise RPCError(method, str(last_err))

    async def send_transaction(self, payload_b64: str, *, timeout_s: Optional[float] = None) -> Any:
        return await self.call(
            "sendTransaction",
            [payload_b64, {"encoding": "base64", "skipPreflight": True, "maxRetries": 0}],
            timeout_s=timeout_s,
            max_retries=0,
        )

    async def get_recent_prioritization_fees(
        self,
        *,
        percentile: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        params: list = [[]]
        if percentile:
            params.append({"percentile": int(percentile)})
        res = await self.call("getRecentPrioritizationFees", params, timeout_s=timeout_s, max_retries=0)
        return list(res or [])

    async def get_balance(self, address: str, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("getBalance", [address, {"commitment": "confirmed"}], timeout_s=timeout_s)
        if isinstance(res, dict):
            return int(res.get("value") or 0)
        return int(res or 0)
