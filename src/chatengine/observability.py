"""In-process latency metrics for turns, directives, tools and MCP calls.

Operations are named ``<layer>.<name>`` (``mcp.chat``, ``chat.run_turn``,
``orchestrator.complete``, ``placeholders.resolve``, ``tool.<kind>``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from time import perf_counter

logger = logging.getLogger(__name__)

Snapshot = dict[str, dict[str, float | int]]


@dataclass
class LatencySummary:
    """Aggregated latency metrics for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, ok: bool) -> None:
        first = self.count == 0
        self.count += 1
        self.error_count += 0 if ok else 1
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        self.min_ms = duration_ms if first else min(self.min_ms, duration_ms)
        self.max_ms = duration_ms if first else max(self.max_ms, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "error_count": self.error_count,
            "total_ms": round(self.total_ms, 3),
            "avg_ms": round(avg, 3),
            "min_ms": round(self.min_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "last_ms": round(self.last_ms, 3),
        }


_lock = Lock()
_summaries: dict[str, LatencySummary] = {}


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    duration_ms = max(float(duration_ms), 0.0)
    with _lock:
        _summaries.setdefault(operation, LatencySummary()).add(duration_ms, ok)
    logger.debug("latency %s %.3fms ok=%s", operation, duration_ms, ok)


@contextmanager
def track_latency(operation: str) -> Iterator[None]:
    """Time the wrapped block; an escaping exception counts as an error."""
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


def latency_metrics_snapshot() -> Snapshot:
    """Return current in-process latency aggregates, sorted by operation."""
    with _lock:
        return {name: _summaries[name].as_dict() for name in sorted(_summaries)}


def reset_latency_metrics() -> None:
    """Clear all latency aggregates (test helper)."""
    with _lock:
        _summaries.clear()
