"""In-process metrics for pushbatch.

Two kinds of data are collected:

- timings, grouped by kind ("db" for store calls, "request" for API
  endpoints), each keeping count/total/min/max in milliseconds;
- event counters for pipeline outcomes, named "<stage>.<outcome>"
  (accumulate.created, sweep.evicted, presence.cleared_batches, ...).

Everything lives in memory and is exposed via the /metrics endpoint.
Alerting on failure counts is left to whoever scrapes it.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 100

DB = "db"
REQUEST = "request"


@dataclass
class Timing:
    count: int = 0
    total_ms: float = 0.0
    min_ms: float | None = None
    max_ms: float = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.max_ms = max(self.max_ms, duration_ms)
        if self.min_ms is None or duration_ms < self.min_ms:
            self.min_ms = duration_ms

    def to_dict(self) -> dict:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(avg, 2),
            "min_ms": round(self.min_ms or 0.0, 2),
            "max_ms": round(self.max_ms, 2),
        }


class Metrics:
    """Thread-safe collector; DB timings are recorded from executor threads."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._timings: dict[str, dict[str, Timing]] = {DB: {}, REQUEST: {}}
        self._counters: Counter[str] = Counter()
        self._started = time.time()

    def record(self, kind: str, name: str, duration_ms: float) -> None:
        with self._lock:
            self._timings.setdefault(kind, {}).setdefault(name, Timing()).add(duration_ms)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        self.record(DB, operation, duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        self.record(REQUEST, endpoint, duration_ms)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def to_dict(self) -> dict:
        """Snapshot for the /metrics endpoint."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started, 1),
                "db_operations": {k: t.to_dict() for k, t in self._timings[DB].items()},
                "requests": {k: t.to_dict() for k, t in self._timings[REQUEST].items()},
                "counters": dict(self._counters),
            }

    def reset(self) -> None:
        """Forget everything (tests)."""
        with self._lock:
            self._timings = {DB: {}, REQUEST: {}}
            self._counters.clear()
            self._started = time.time()


metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str) -> Iterator[None]:
    """Time a block of store work under the given operation name.

        with timed_db_operation("get_matured_batches"):
            rows = conn.execute(...).fetchall()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, elapsed_ms)
        if elapsed_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {elapsed_ms:.1f}ms")
