from __future__ import annotations

from typing import Any, Dict, Optional

from feed.pubsub import Frame, block_subscribe, decode_block
from feed.stream import StreamWatcher
from feed.types import BlockRef


class BlockhashWatcher(StreamWatcher[BlockRef]):
    """Tracks the latest block reference from block notifications.

    Only a new blockhash refreshes the cell, so the cell's age is the age of
    the blockhash itself.
    """

    name = "Blockhash Watcher"
    write_on_change_only = True

    def subscribe_message(self, req_id: int) -> Dict[str, Any]:
        return block_subscribe(req_id, self.commitment)

    def decode(self, raw: Frame) -> Optional[BlockRef]:
        return decode_block(raw)

    def is_change(self, old: Optional[BlockRef], new: BlockRef) -> bool:
        return old is None or old.blockhash != new.blockhash
