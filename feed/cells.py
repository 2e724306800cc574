from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

from feed.types import PendingProbe

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True)
class CellSnapshot(Generic[T]):
    name: str
    value: Optional[T]
    updated_at: float
    age_s: float

    def is_fresh(self, max_age_s: float) -> bool:
        return self.value is not None and self.age_s < float(max_age_s)


class FreshnessCell(Generic[T]):
    """Single-writer value cell stamped with the time of its last write.

    A cell that was never written reports its age from creation, so a
    watcher that never delivers still trips the fatal staleness bound.
    """

    def __init__(self, name: str, *, clock: Clock = time.monotonic) -> None:
        self.name = str(name)
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[T] = None
        self._updated_at = 0.0
        self._created_at = float(clock())
        self._writes = 0

    def write(self, value: T) -> None:
        now = float(self._clock())
        with self._lock:
            self._value = value
            self._updated_at = max(self._updated_at, now)
            self._writes += 1

    def peek(self) -> Optional[T]:
        with self._lock:
            return self._value

    def read(self, now_s: Optional[float] = None) -> CellSnapshot[T]:
        now = float(now_s if now_s is not None else self._clock())
        with self._lock:
            value = self._value
            updated_at = self._updated_at
            since = updated_at if self._writes else self._created_at
        return CellSnapshot(name=self.name, value=value, updated_at=updated_at, age_s=max(0.0, now - since))

    @property
    def writes(self) -> int:
        with self._lock:
            return self._writes


class PendingProbes:
    """Probes awaiting their cycle's outcome, keyed by probe id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, PendingProbe] = {}

    def add(self, probe: PendingProbe) -> None:
        with self._lock:
            self._items[probe.probe_id] = probe

    def get(self, probe_id: str) -> Optional[PendingProbe]:
        with self._lock:
            return self._items.get(str(probe_id))

    def pop(self, probe_id: str) -> Optional[PendingProbe]:
        with self._lock:
            return self._items.pop(str(probe_id), None)

    def __contains__(self, probe_id: object) -> bool:
        with self._lock:
            return probe_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
