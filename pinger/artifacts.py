from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional


def configure_logging(log_dir: Optional[Path] = None, *, verbose: bool = False) -> logging.Logger:
    """Root logger: stream handler always, plus <log_dir>/run.log when given."""
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path / "run.log", encoding="utf-8")
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    logger.addHandler(stream_handler)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.INFO)
    return logger


def append_jsonl(path: Path, obj: Dict[str, Any]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(obj) + "\n")


class SendJournal:
    """One JSONL line per initial send, for offline slot-ordering analysis."""

    def __init__(self, results_dir: Path, *, started_at: Optional[float] = None) -> None:
        ts = int(started_at if started_at is not None else time.time())
        self.path = Path(results_dir) / f"{ts}.jsonl"
        self.sequence_number = 0

    def record(self, slot_sent: int, signature: str) -> None:
        self.sequence_number += 1
        append_jsonl(
            self.path,
            {
                "slot_sent": int(slot_sent),
                "sequence_number": self.sequence_number,
                "signature": signature,
            },
        )
