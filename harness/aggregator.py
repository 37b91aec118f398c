from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Dict, List, Optional

from .models import Outcome, RequestSample, TargetResult


def percentile(sorted_values: List[float], p: float) -> float:
    """Value at index floor(n * p) of an ascending list; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    idx = min(int(math.floor(len(sorted_values) * p)), len(sorted_values) - 1)
    return float(sorted_values[idx])


class MetricsAggregator:
    """Reduces RequestSamples for one target into a TargetResult.

    Counters are exact over the whole run; latency percentiles are taken
    from a bounded window of the most recent responses.
    """

    def __init__(
        self,
        target_name: str,
        url: str,
        window: int = 100,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.target_name = target_name
        self.url = url
        self._clock = clock
        self._lock = threading.Lock()
        self.latency_ms: deque = deque(maxlen=max(1, window))
        self.errors_by_kind: Dict[str, int] = defaultdict(int)
        self.requests_by_endpoint: Dict[str, int] = defaultdict(int)
        self.total = 0
        self.successes = 0
        self.errors = 0
        self._latency_sum = 0.0
        self._latency_count = 0
        self._min_latency: Optional[float] = None
        self._max_latency = 0.0
        self._memory_samples: List[float] = []
        self._started_at = clock()
        self._last_at = self._started_at
        self._finished_at: Optional[float] = None

    def start(self) -> None:
        with self._lock:
            self._started_at = self._clock()
            self._last_at = self._started_at

    def finish(self) -> None:
        with self._lock:
            if self._finished_at is None:
                self._finished_at = self._clock()

    def record(self, sample: RequestSample) -> None:
        with self._lock:
            self.total += 1
            self.requests_by_endpoint[sample.endpoint] += 1
            if sample.outcome is Outcome.SUCCESS:
                self.successes += 1
            else:
                self.errors += 1
                self.errors_by_kind[sample.error_kind or "Unknown"] += 1

            # transport errors have no response, so no latency
            if sample.outcome is not Outcome.TRANSPORT_ERROR:
                lat = float(sample.latency_ms)
                self.latency_ms.append(lat)
                self._latency_sum += lat
                self._latency_count += 1
                self._max_latency = max(self._max_latency, lat)
                self._min_latency = lat if self._min_latency is None else min(self._min_latency, lat)

            if self._finished_at is None:
                self._last_at = self._clock()

    def observe_memory(self, memory_mb: float) -> None:
        with self._lock:
            self._memory_samples.append(float(memory_mb))

    @property
    def peak_memory_mb(self) -> float:
        with self._lock:
            return max(self._memory_samples, default=0.0)

    def summarize(self) -> TargetResult:
        with self._lock:
            lat = sorted(self.latency_ms)
            end = self._finished_at if self._finished_at is not None else self._last_at
            elapsed = max(0.0, end - self._started_at)
            mem = self._memory_samples
            return TargetResult(
                target_name=self.target_name,
                url=self.url,
                total_requests=self.total,
                success_count=self.successes,
                error_count=self.errors,
                errors_by_kind=dict(self.errors_by_kind),
                requests_by_endpoint=dict(self.requests_by_endpoint),
                latency_samples=list(self.latency_ms),
                avg_latency_ms=(self._latency_sum / self._latency_count) if self._latency_count else 0.0,
                min_latency_ms=self._min_latency or 0.0,
                max_latency_ms=self._max_latency,
                p50_latency_ms=percentile(lat, 0.50),
                p95_latency_ms=percentile(lat, 0.95),
                p99_latency_ms=percentile(lat, 0.99),
                requests_per_second=(self.total / elapsed) if elapsed > 0 else 0.0,
                duration_seconds=elapsed,
                peak_memory_mb=max(mem, default=0.0),
                avg_memory_mb=(sum(mem) / len(mem)) if mem else 0.0,
                provenance="in_process",
            )
