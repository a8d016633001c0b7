from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional


class Metrics:
    """Process-local counters for the feed, RPC layer and engine."""

    def __init__(self, max_samples: int = 1000) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._reasons: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._samples: Dict[str, Deque[float]] = {}
        self._max_samples = int(max_samples)

    def inc(self, name: str, n: int = 1) -> None:
        if name:
            self._counters[str(name)] += int(n)

    def inc_reason(self, group: str, reason: str, n: int = 1) -> None:
        if group and reason:
            self._reasons[str(group)][str(reason)] += int(n)

    def observe(self, name: str, value: float) -> None:
        if not name:
            return
        try:
            v = float(value)
        except (TypeError, ValueError):
            return
        if v != v:  # NaN
            return
        bucket = self._samples.get(name)
        if bucket is None:
            bucket = deque(maxlen=self._max_samples)
            self._samples[name] = bucket
        bucket.append(v)

    @staticmethod
    def _percentile(vals: List[float], pct: float) -> Optional[float]:
        if not vals:
            return None
        v = sorted(vals)
        k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
        return float(v[k])

    def snapshot(self) -> Dict[str, Any]:
        latencies = {
            name: {
                "count": len(vals),
                "p50": self._percentile(list(vals), 50.0),
                "p95": self._percentile(list(vals), 95.0),
            }
            for name, vals in self._samples.items()
        }
        return {
            "counters": dict(self._counters),
            "reasons": {group: dict(counts) for group, counts in self._reasons.items()},
            "latencies": latencies,
        }


METRICS = Metrics()
