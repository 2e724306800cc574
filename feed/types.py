from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class BlockRef:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class ConfirmationEvent:
    probe_id: str
    slot_landed: int
    success: bool


@dataclass(frozen=True)
class PendingProbe:
    probe_id: str
    slot_sent: int
    send_time: float


@dataclass(frozen=True)
class SubscriptionFilter:
    """Either one exact signature or every transaction mentioning an address."""

    signature: Optional[str] = None
    address: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.signature) == bool(self.address):
            raise ValueError("SubscriptionFilter needs exactly one of signature/address")

    @classmethod
    def for_signature(cls, signature: str) -> "SubscriptionFilter":
        return cls(signature=str(signature))

    @classmethod
    def for_address(cls, address: str) -> "SubscriptionFilter":
        return cls(address=str(address))

    @property
    def key(self) -> str:
        if self.signature:
            return f"sig:{self.signature}"
        return f"addr:{self.address}"
