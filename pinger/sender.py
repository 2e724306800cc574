from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from infra.rpc import AsyncRPC, RPCError
from pinger import config
from pinger.signer import SignedProbe

logger = logging.getLogger(__name__)

SEND_CONFIG: Dict[str, Any] = {"encoding": "base64", "skipPreflight": True, "maxRetries": 0}


class SendError(Exception):
    """A probe could not be handed to the network. Never fatal to the cycle."""

    reason = "send_error"

    def __init__(self, endpoint: str, detail: str) -> None:
        super().__init__(f"{self.reason} ({endpoint}): {detail}")
        self.endpoint = endpoint
        self.detail = detail


class SendRequestFailed(SendError):
    reason = "request_failed"


class SendNonSuccessStatus(SendError):
    reason = "non_success_status"

    def __init__(self, endpoint: str, status: int, body: str) -> None:
        super().__init__(endpoint, f"status {status}: {body[:300]}")
        self.status = int(status)
        self.body = body


class SendInvalidJson(SendError):
    reason = "invalid_json"


class SendRpcError(SendError):
    reason = "rpc_error"

    def __init__(self, endpoint: str, code: int, message: str) -> None:
        super().__init__(endpoint, f"error {code}: {message}")
        self.code = int(code)
        self.message = message


class SendMissingSignature(SendError):
    reason = "missing_signature"


class SendSignatureMismatch(SendError):
    reason = "signature_mismatch"

    def __init__(self, endpoint: str, expected: str, actual: str) -> None:
        super().__init__(endpoint, f"returned {actual} (expected {expected})")
        self.expected = expected
        self.actual = actual


class RpcSendFailed(SendError):
    reason = "rpc_send_failed"


def verify_echoed_signature(endpoint: str, body: str, expected: str) -> str:
    """Check a sendTransaction response body; returns the echoed signature."""
    try:
        data = json.loads(body)
    except ValueError as e:
        raise SendInvalidJson(endpoint, f"{e}: {body[:300]}") from None
    if not isinstance(data, dict):
        raise SendInvalidJson(endpoint, f"response is not an object: {body[:300]}")
    err = data.get("error")
    if err is not None:
        code = err.get("code") if isinstance(err, dict) else None
        message = err.get("message") if isinstance(err, dict) else None
        raise SendRpcError(endpoint, int(code or 0), str(message or "Unknown RPC error"))
    result = data.get("result")
    if not isinstance(result, str) or not result:
        raise SendMissingSignature(endpoint, body[:300])
    if result != expected:
        raise SendSignatureMismatch(endpoint, expected, result)
    return result


class RpcTransport:
    """sendTransaction through the shared JSON-RPC client."""

    name = "rpc"

    def __init__(self, rpc: AsyncRPC, *, timeout_s: float = config.RPC_DEFAULT_TIMEOUT_S) -> None:
        self.rpc = rpc
        self.timeout_s = float(timeout_s)

    async def send(self, probe: SignedProbe) -> str:
        try:
            result = await self.rpc.send_transaction(probe.payload_b64, timeout_s=self.timeout_s)
        except RPCError as e:
            raise RpcSendFailed(self.rpc.url, e.reason) from e
        if result != probe.probe_id:
            raise SendSignatureMismatch(self.rpc.url, probe.probe_id, str(result))
        return str(result)


class HttpSendTransport:
    """sendTransaction POSTed to a dedicated endpoint, echoed signature verified."""

    name = "http"

    def __init__(
        self,
        endpoint: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = config.RPC_DEFAULT_TIMEOUT_S,
    ) -> None:
        self.endpoint = str(endpoint).strip()
        self.timeout_s = float(timeout_s)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send(self, probe: SignedProbe) -> str:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendTransaction",
            "params": [probe.payload_b64, dict(SEND_CONFIG)],
        }
        session = await self._get_session()
        try:
            async with session.post(
                self.endpoint,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SendRequestFailed(self.endpoint, f"{type(e).__name__}: {e}") from e
        if not 200 <= status < 300:
            raise SendNonSuccessStatus(self.endpoint, status, text)
        return verify_echoed_signature(self.endpoint, text, probe.probe_id)
