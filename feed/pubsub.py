"""Solana JSON-RPC PubSub framing.

Builders return plain dicts ready for ``json.dumps``; decoders accept the raw
frame (str/bytes) or an already-parsed dict and return ``None`` for anything
that is not the notification they look for. Malformed frames raise
``DecodeError`` so watchers can log and skip them.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple, Union

from solders.hash import Hash

from feed.types import BlockRef

Frame = Union[str, bytes, Dict[str, Any]]


class DecodeError(ValueError):
    """Frame could not be parsed into the expected notification."""


def block_subscribe(req_id: int, commitment: str = "confirmed") -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": int(req_id),
        "method": "blockSubscribe",
        "params": [
            "all",
            {
                "commitment": commitment,
                "encoding": "base64",
                "transactionDetails": "none",
                "showRewards": False,
                "maxSupportedTransactionVersion": 0,
            },
        ],
    }


def slots_updates_subscribe(req_id: int) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": int(req_id), "method": "slotsUpdatesSubscribe", "params": []}


def signature_subscribe(req_id: int, signature: str, commitment: str = "confirmed") -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": int(req_id),
        "method": "signatureSubscribe",
        "params": [str(signature), {"commitment": commitment}],
    }


def signature_unsubscribe(req_id: int, sub_id: int) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": int(req_id), "method": "signatureUnsubscribe", "params": [int(sub_id)]}


def logs_subscribe(req_id: int, address: str, commitment: str = "confirmed") -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": int(req_id),
        "method": "logsSubscribe",
        "params": [{"mentions": [str(address)]}, {"commitment": commitment}],
    }


def parse_frame(raw: Frame) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"invalid json frame: {e}") from None
    if not isinstance(data, dict):
        raise DecodeError("frame is not an object")
    return data


def _notification_result(data: Dict[str, Any], method: str) -> Optional[Tuple[Dict[str, Any], Optional[int]]]:
    if data.get("method") != method:
        return None
    params = data.get("params")
    if not isinstance(params, dict):
        raise DecodeError(f"{method}: missing params")
    result = params.get("result")
    if not isinstance(result, dict):
        raise DecodeError(f"{method}: missing result")
    sub_id = params.get("subscription")
    return result, (int(sub_id) if isinstance(sub_id, int) else None)


def subscription_ack(raw: Frame) -> Optional[Tuple[int, int]]:
    """``(request_id, subscription_id)`` for a subscribe acknowledgement."""
    data = parse_frame(raw)
    if "method" in data:
        return None
    req_id = data.get("id")
    result = data.get("result")
    if isinstance(req_id, int) and isinstance(result, int) and not isinstance(result, bool):
        return req_id, result
    return None


def subscription_error(raw: Frame) -> Optional[Tuple[Optional[int], str]]:
    data = parse_frame(raw)
    err = data.get("error")
    if err is None:
        return None
    if isinstance(err, dict):
        msg = str(err.get("message") or err)
    else:
        msg = str(err)
    req_id = data.get("id")
    return (req_id if isinstance(req_id, int) else None), msg


def validate_blockhash(value: Any) -> str:
    text = str(value or "").strip()
    try:
        Hash.from_string(text)
    except Exception as e:
        raise DecodeError(f"invalid blockhash {text!r}: {e}") from None
    return text


def decode_block(raw: Frame) -> Optional[BlockRef]:
    data = parse_frame(raw)
    found = _notification_result(data, "blockNotification")
    if found is None:
        return None
    result, _ = found
    value = result.get("value")
    if not isinstance(value, dict):
        raise DecodeError("blockNotification: missing value")
    if value.get("err") is not None:
        raise DecodeError(f"blockNotification: error {value.get('err')}")
    block = value.get("block")
    if not isinstance(block, dict):
        raise DecodeError("blockNotification: missing block")
    height = block.get("blockHeight")
    if not isinstance(height, int):
        raise DecodeError("blockNotification: missing blockHeight")
    return BlockRef(blockhash=validate_blockhash(block.get("blockhash")), last_valid_block_height=height)


def decode_first_shred_slot(raw: Frame) -> Optional[int]:
    """Slot number from a ``firstShredReceived`` update; other update types yield None."""
    data = parse_frame(raw)
    found = _notification_result(data, "slotsUpdatesNotification")
    if found is None:
        return None
    result, _ = found
    if result.get("type") != "firstShredReceived":
        return None
    slot = result.get("slot")
    if not isinstance(slot, int) or slot < 0:
        raise DecodeError(f"slotsUpdatesNotification: bad slot {slot!r}")
    return slot


def decode_signature_update(raw: Frame) -> Optional[Tuple[int, int, bool]]:
    """``(subscription_id, slot, success)`` from a signatureNotification."""
    data = parse_frame(raw)
    found = _notification_result(data, "signatureNotification")
    if found is None:
        return None
    result, sub_id = found
    if sub_id is None:
        raise DecodeError("signatureNotification: missing subscription")
    slot = (result.get("context") or {}).get("slot")
    value = result.get("value")
    if not isinstance(slot, int):
        raise DecodeError("signatureNotification: missing context.slot")
    if not isinstance(value, dict):
        # receivedSignature updates carry a string value, not a result
        return None
    return sub_id, slot, value.get("err") is None


def decode_logs_update(raw: Frame) -> Optional[Tuple[str, int, bool]]:
    """``(signature, slot, success)`` from a logsNotification."""
    data = parse_frame(raw)
    found = _notification_result(data, "logsNotification")
    if found is None:
        return None
    result, _ = found
    slot = (result.get("context") or {}).get("slot")
    value = result.get("value")
    if not isinstance(slot, int) or not isinstance(value, dict):
        raise DecodeError("logsNotification: missing context.slot or value")
    signature = value.get("signature")
    if not signature:
        raise DecodeError("logsNotification: missing signature")
    return str(signature), slot, value.get("err") is None
