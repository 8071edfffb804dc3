"""In-process latency aggregates for store and boundary operations."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from threading import Lock
from time import perf_counter

logger = logging.getLogger(__name__)

# Recent samples kept per operation for percentile estimates.
_WINDOW = 512


@dataclass
class LatencySummary:
    """Running totals plus a bounded window of recent samples."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    recent: deque[float] = field(default_factory=lambda: deque(maxlen=_WINDOW))

    def percentile(self, q: float) -> float:
        if not self.recent:
            return 0.0
        ordered = sorted(self.recent)
        index = min(int(round(q * (len(ordered) - 1))), len(ordered) - 1)
        return ordered[index]


class _LatencyRecorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, LatencySummary] = {}

    def record(self, *, operation: str, duration_ms: float, ok: bool) -> None:
        sample = max(float(duration_ms), 0.0)
        with self._lock:
            summary = self._stats.setdefault(operation, LatencySummary())
            summary.count += 1
            summary.error_count += 0 if ok else 1
            summary.total_ms += sample
            summary.max_ms = max(summary.max_ms, sample)
            summary.recent.append(sample)

        logger.info("latency operation=%s duration_ms=%.3f ok=%s", operation, sample, ok)

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "count": s.count,
                    "error_count": s.error_count,
                    "avg_ms": round(s.total_ms / s.count if s.count else 0.0, 3),
                    "p50_ms": round(s.percentile(0.5), 3),
                    "p95_ms": round(s.percentile(0.95), 3),
                    "max_ms": round(s.max_ms, 3),
                }
                for operation, s in sorted(self._stats.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


_RECORDER = _LatencyRecorder()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    _RECORDER.record(operation=operation, duration_ms=duration_ms, ok=ok)


@contextmanager
def measure(operation: str) -> Iterator[None]:
    """Time the enclosed block; an escaping exception counts as an error."""
    start = perf_counter()
    ok = False
    try:
        yield
        ok = True
    finally:
        record_latency(
            operation=operation,
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process latency aggregates."""
    return _RECORDER.snapshot()


def reset_latency_metrics() -> None:
    """Clear all latency aggregates (test helper)."""
    _RECORDER.reset()
