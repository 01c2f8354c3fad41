"""
Metrics for the fusion engine.

Tracks operation latencies and engine counters for `FusionEngine.get_status()`.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

COUNTERS = (
    "ticks_accepted",
    "ticks_dropped",
    "trades_ingested",
    "signals_logged",
    "signals_evaluated",
    "errors",
)

LATENCIES = ("recompute", "classifier", "persistence_flush")


@dataclass
class LatencyStats:
    """Statistics for a latency metric."""
    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float('inf')
    max_ms: float = 0.0
    last_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0


class LatencyTracker:
    """
    Latency statistics for one operation.

    Keeps a sliding window of samples for percentile approximation.
    """

    def __init__(self, window_size: int = 500):
        self._samples: Deque[float] = deque(maxlen=window_size)
        self._stats = LatencyStats()
        self._lock = threading.Lock()

    def record(self, latency_ms: float) -> None:
        with self._lock:
            self._samples.append(latency_ms)
            self._stats.count += 1
            self._stats.total_ms += latency_ms
            self._stats.last_ms = latency_ms
            self._stats.min_ms = min(self._stats.min_ms, latency_ms)
            self._stats.max_ms = max(self._stats.max_ms, latency_ms)

    def get_stats(self) -> LatencyStats:
        with self._lock:
            stats = LatencyStats(
                count=self._stats.count,
                total_ms=self._stats.total_ms,
                min_ms=self._stats.min_ms if self._stats.count > 0 else 0.0,
                max_ms=self._stats.max_ms,
                last_ms=self._stats.last_ms,
            )
            if self._samples:
                ordered = sorted(self._samples)
                n = len(ordered)
                stats.p50_ms = ordered[int(n * 0.5)]
                stats.p95_ms = ordered[min(int(n * 0.95), n - 1)]
            return stats

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._stats = LatencyStats()


class Timer:
    """Context manager for timing operations."""

    def __init__(self, tracker: LatencyTracker, on_done: Optional[Callable[[float], None]] = None):
        self._tracker = tracker
        self._on_done = on_done
        self._start: float = 0

    def __enter__(self) -> 'Timer':
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._tracker.record(elapsed_ms)
        if self._on_done is not None:
            self._on_done(elapsed_ms)


class MetricsCollector:
    """
    Central metrics collector.

    Usage:
        metrics = MetricsCollector()

        with metrics.time("recompute"):
            engine.recompute()

        metrics.increment("ticks_accepted")
        metrics.get_summary()
    """

    def __init__(self, slow_threshold_ms: float = 100.0):
        self._latencies: Dict[str, LatencyTracker] = {name: LatencyTracker() for name in LATENCIES}
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._slow_threshold_ms = slow_threshold_ms
        self._on_slow_operation: List[Callable[[str, float], None]] = []

    def time(self, operation: str) -> Timer:
        """Timer context manager for an operation."""
        if operation not in self._latencies:
            self._latencies[operation] = LatencyTracker()
        return Timer(self._latencies[operation], lambda ms: self._check_slow(operation, ms))

    def record_latency(self, operation: str, latency_ms: float) -> None:
        if operation not in self._latencies:
            self._latencies[operation] = LatencyTracker()
        self._latencies[operation].record(latency_ms)
        self._check_slow(operation, latency_ms)

    def _check_slow(self, operation: str, latency_ms: float) -> None:
        if latency_ms <= self._slow_threshold_ms:
            return
        logger.debug(f"Slow operation {operation}: {latency_ms:.1f}ms")
        for callback in self._on_slow_operation:
            try:
                callback(operation, latency_ms)
            except Exception as e:
                logger.error(f"Slow operation callback error: {e}")

    def on_slow_operation(self, callback: Callable[[str, float], None]) -> None:
        self._on_slow_operation.append(callback)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] = self._counters.get(counter, 0) + amount

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_latency_stats(self, operation: str) -> Optional[LatencyStats]:
        tracker = self._latencies.get(operation)
        return tracker.get_stats() if tracker else None

    def get_summary(self) -> Dict[str, Any]:
        """Plain-dict summary for status output."""
        with self._lock:
            counters = dict(self._counters)
        latencies = {}
        for name, tracker in self._latencies.items():
            stats = tracker.get_stats()
            latencies[name] = {
                "count": stats.count,
                "mean": round(stats.mean_ms, 3),
                "p50": round(stats.p50_ms, 3),
                "p95": round(stats.p95_ms, 3),
                "max": round(stats.max_ms, 3),
            }
        return {
            "uptime_seconds": time.time() - self._start_time,
            "counters": counters,
            "latencies_ms": latencies,
        }

    def reset(self) -> None:
        for tracker in self._latencies.values():
            tracker.reset()
        with self._lock:
            self._counters = {k: 0 for k in self._counters}
        self._start_time = time.time()
