from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional


class Metrics:
    """Process-local operational counters.

    Latency series that leave the process go through infra.prom; this is the
    cheap in-memory side used for logs and tests.
    """

    def __init__(self, max_samples: int = 2000) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._reason_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._max_samples = int(max_samples)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._reason_counters.clear()
            self._samples.clear()

    def inc(self, name: str, n: int = 1) -> None:
        if not name:
            return
        with self._lock:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if not group or not reason:
            return
        with self._lock:
            self._reason_counters[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        with self._lock:
            bucket = self._samples[str(name)]
            bucket.append(v)
            if len(bucket) > self._max_samples:
                del bucket[: len(bucket) - self._max_samples]

    def get(self, name: str) -> int:
        with self._lock:
            return int(self._counters.get(str(name), 0))

    def reasons(self, group: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._reason_counters.get(str(group), {}))

    @staticmethod
    def _percentile(vals: List[float], pct: float) -> Optional[float]:
        if not vals:
            return None
        v = sorted(vals)
        if len(v) == 1:
            return float(v[0])
        k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
        return float(v[k])

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            reasons = {group: dict(counts) for group, counts in self._reason_counters.items()}
            samples = {name: list(vals) for name, vals in self._samples.items()}

        sample_stats: Dict[str, Any] = {}
        for name, vals in samples.items():
            sample_stats[name] = {
                "count": len(vals),
                "p50": self._percentile(vals, 50.0),
                "p95": self._percentile(vals, 95.0),
            }

        return {
            "counters": counters,
            "reason_counters": reasons,
            "samples": sample_stats,
        }


METRICS = Metrics()
