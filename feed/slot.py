from __future__ import annotations

from typing import Any, Dict, Optional

from feed.pubsub import Frame, decode_first_shred_slot, slots_updates_subscribe
from feed.stream import StreamWatcher


class SlotWatcher(StreamWatcher[int]):
    """Current slot as seen by the first shred of each new slot."""

    name = "Slot Watcher"

    def subscribe_message(self, req_id: int) -> Dict[str, Any]:
        return slots_updates_subscribe(req_id)

    def decode(self, raw: Frame) -> Optional[int]:
        return decode_first_shred_slot(raw)
