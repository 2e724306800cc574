from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional

import base58
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from feed.types import BlockRef
from pinger import config


@dataclass(frozen=True)
class SignedProbe:
    probe_id: str
    payload: bytes

    @property
    def payload_b64(self) -> str:
        return base64.b64encode(self.payload).decode("ascii")


class ProbeSigner:
    """Builds the canary: compute budget + a self-transfer, signed by the payer."""

    def __init__(
        self,
        keypair: Keypair,
        *,
        compute_unit_limit: int = config.PROBE_COMPUTE_UNIT_LIMIT,
        transfer_lamports: int = config.PROBE_TRANSFER_LAMPORTS,
    ) -> None:
        self.keypair = keypair
        self.compute_unit_limit = int(compute_unit_limit)
        self.transfer_lamports = int(transfer_lamports)

    @classmethod
    def from_base58(cls, secret: str, **kwargs) -> "ProbeSigner":
        try:
            keypair = Keypair.from_bytes(base58.b58decode(str(secret).strip()))
        except Exception as e:
            raise ValueError(f"invalid base58 keypair: {e}") from None
        return cls(keypair, **kwargs)

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    def sign(self, block: BlockRef, fee_micro_lamports: Optional[int] = None) -> SignedProbe:
        payer = self.keypair.pubkey()
        recent = Hash.from_string(block.blockhash)
        ixs = [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(int(fee_micro_lamports or 0)),
            transfer(TransferParams(from_pubkey=payer, to_pubkey=payer, lamports=self.transfer_lamports)),
        ]
        msg = Message.new_with_blockhash(ixs, payer, recent)
        tx = Transaction([self.keypair], msg, recent)
        return SignedProbe(probe_id=str(tx.signatures[0]), payload=bytes(tx))
