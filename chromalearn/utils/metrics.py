"""
ChromaLearn Metrics Collection
In-process counters and durations for matching, clustering, feedback and
learning runs. Nothing is exported; callers read a summary dict.
"""
import time
from collections import Counter
from threading import Lock
from typing import Any, Dict, List, Optional

import numpy as np


MATCH_REQUESTS = "match_requests_total"
MATCH_METHOD_PREFIX = "match_method_total_"


class DurationSeries:
    """Durations in milliseconds for one operation."""

    def __init__(self):
        self.values: List[float] = []

    def add(self, duration_ms: float):
        self.values.append(float(duration_ms))

    def describe(self) -> Dict[str, float]:
        data = np.asarray(self.values, dtype=np.float64)
        p50, p95 = np.percentile(data, [50, 95])
        return {
            "count": int(data.size),
            "mean": float(data.mean()),
            "min": float(data.min()),
            "max": float(data.max()),
            "p50": float(p50),
            "p95": float(p95),
        }


class MetricsCollector:
    """Thread-safe counters and duration series keyed by name."""

    def __init__(self):
        self._lock = Lock()
        self._counters: Counter = Counter()
        self._durations: Dict[str, DurationSeries] = {}
        self._started_at = time.time()

    def increment_counter(self, name: str, amount: int = 1):
        with self._lock:
            self._counters[name] += amount

    def increment_match_method(self, method: str):
        """Count one match request under the method that produced its result."""
        with self._lock:
            self._counters[MATCH_REQUESTS] += 1
            self._counters[MATCH_METHOD_PREFIX + method] += 1

    def record_override(self, method: str):
        """Count a result replaced after the deterministic match was already counted."""
        self.increment_counter(MATCH_METHOD_PREFIX + method)

    def record_timing(self, operation: str, duration_ms: float):
        key = f"{operation}_duration_ms"
        with self._lock:
            self._durations.setdefault(key, DurationSeries()).add(duration_ms)

    def get_counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def get_match_methods(self) -> Dict[str, int]:
        """Per-method match counts with the counter prefix stripped."""
        counters = self.get_counters()
        return {
            name[len(MATCH_METHOD_PREFIX):]: count
            for name, count in counters.items()
            if name.startswith(MATCH_METHOD_PREFIX)
        }

    def get_timing_stats(self) -> Dict[str, Dict[str, float]]:
        """count, mean, min, max, p50 and p95 for every operation with samples."""
        with self._lock:
            return {
                key: series.describe()
                for key, series in self._durations.items()
                if series.values
            }

    def get_uptime_seconds(self) -> float:
        return time.time() - self._started_at

    def get_summary(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "counters": self.get_counters(),
            "match_methods": self.get_match_methods(),
            "timing_stats": self.get_timing_stats(),
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._durations.clear()
            self._started_at = time.time()


_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Process-wide collector, created on first use."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def reset_metrics():
    """Clear the process-wide collector (tests use this between cases)."""
    if _metrics is not None:
        _metrics.reset()
