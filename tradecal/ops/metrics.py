"""Metrics collection for engine calls and batch jobs."""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional
import threading
import time


def metric_key(name: str, segment: Optional[str] = None) -> str:
    """``learning.applied`` or, scoped to a segment, ``learning.DYN_SF.applied``."""
    if not segment:
        return name
    head, _, tail = name.rpartition(".")
    return f"{head}.{segment}.{tail}" if head else f"{segment}.{tail}"


@dataclass
class _TimingAggregate:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def add(self, value_ms: float) -> None:
        self.count += 1
        self.total_ms += value_ms
        self.max_ms = max(self.max_ms, value_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": self.total_ms / self.count,
            "max_ms": self.max_ms,
        }


class MetricsRecorder:
    """Counters, timings and gauges. Subclasses decide where they go."""

    def increment(self, key: str, value: int = 1) -> None:
        raise NotImplementedError

    def timing(self, key: str, value_ms: float) -> None:
        raise NotImplementedError

    def gauge(self, key: str, value: float) -> None:
        raise NotImplementedError

    def snapshot(self) -> Dict[str, Dict]:
        raise NotImplementedError

    @contextmanager
    def timed(self, key: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timing(key, (time.perf_counter() - started) * 1000.0)


class InMemoryMetricsRecorder(MetricsRecorder):
    """Process-local recorder; timings keep running aggregates, not samples."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def increment(self, key: str, value: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(value)

    def timing(self, key: str, value_ms: float) -> None:
        with self._lock:
            self._timings.setdefault(key, _TimingAggregate()).add(float(value_ms))

    def gauge(self, key: str, value: float) -> None:
        with self._lock:
            self._gauges[key] = float(value)

    def snapshot(self) -> Dict[str, Dict]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings": {key: agg.summary() for key, agg in self._timings.items() if agg.count},
                "gauges": dict(self._gauges),
            }

    def reset(self) -> None:
        with self._lock:
            self._counters: Dict[str, int] = {}
            self._timings: Dict[str, _TimingAggregate] = {}
            self._gauges: Dict[str, float] = {}


_DEFAULT_RECORDER = InMemoryMetricsRecorder()


def get_metrics_recorder() -> MetricsRecorder:
    return _DEFAULT_RECORDER
