import threading
import time
from collections import defaultdict
from typing import Any, Dict, List


class SchedulerMetrics:
    """
    Scheduler-owned metrics collector.

    Used for:
    - session status reports
    - benchmarks
    - tests asserting on scheduling decisions
    """

    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.timestamps: Dict[str, float] = {}
        self._lock = threading.Lock()

    # ---- counters ----
    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    # ---- gauges ----
    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self.gauges[name] = value

    def max_gauge(self, name: str, value: float) -> None:
        """Keep the highest value ever observed."""
        with self._lock:
            if value > self.gauges.get(name, float("-inf")):
                self.gauges[name] = value

    # ---- histograms ----
    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self.histograms[name].append(value)

    # ---- timestamps ----
    def mark_time(self, key: str) -> None:
        self.timestamps[key] = time.monotonic()

    def elapsed_since(self, key: str) -> float:
        start = self.timestamps.get(key)
        if start is None:
            return 0.0
        return time.monotonic() - start

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "histograms": {k: list(v) for k, v in self.histograms.items()},
            }
