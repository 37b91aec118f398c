from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .aggregator import MetricsAggregator


@dataclass(frozen=True)
class Endpoint:
    path: str
    weight: float = 1.0
    method: str = "GET"
    body: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"path": self.path, "weight": self.weight, "method": self.method}
        if self.body is not None:
            out["body"] = self.body
        return out


@dataclass(frozen=True)
class ScenarioConfig:
    """A load profile. Frozen so a running session can never see it change."""

    name: str
    users: int
    duration_seconds: int
    ramp_up_seconds: int = 0
    endpoints: Tuple[Endpoint, ...] = ()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "users": self.users,
            "durationSeconds": self.duration_seconds,
            "rampUpSeconds": self.ramp_up_seconds,
            "endpoints": [e.to_dict() for e in self.endpoints],
        }


@dataclass(frozen=True)
class Target:
    name: str
    url: str


class Outcome(str, Enum):
    SUCCESS = "success"
    HTTP_ERROR = "http_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class RequestSample:
    target_name: str
    endpoint: str
    started_at_ms: float
    latency_ms: float
    outcome: Outcome
    status_code: Optional[int] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS


@dataclass(frozen=True)
class HealthInfo:
    status: str
    runtime: str
    uptime_s: float
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "runtime": self.runtime, "uptime": self.uptime_s}


@dataclass(frozen=True)
class TargetResult:
    """Fixed-shape summary of one target's run.

    Percentiles come from the bounded latency window, so they are
    approximate once more requests than the window size were made.
    """

    target_name: str
    url: str
    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    requests_by_endpoint: Dict[str, int] = field(default_factory=dict)
    latency_samples: List[float] = field(default_factory=list)
    avg_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    requests_per_second: float = 0.0
    duration_seconds: float = 0.0
    peak_memory_mb: float = 0.0
    avg_memory_mb: float = 0.0
    provenance: str = "in_process"

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.success_count / self.total_requests * 100.0

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.error_count / self.total_requests * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetName": self.target_name,
            "url": self.url,
            "totalRequests": self.total_requests,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "errorsByKind": dict(self.errors_by_kind),
            "requestsByEndpoint": dict(self.requests_by_endpoint),
            "latencySamples": list(self.latency_samples),
            "avgLatencyMs": self.avg_latency_ms,
            "minLatencyMs": self.min_latency_ms,
            "maxLatencyMs": self.max_latency_ms,
            "p50LatencyMs": self.p50_latency_ms,
            "p95LatencyMs": self.p95_latency_ms,
            "p99LatencyMs": self.p99_latency_ms,
            "requestsPerSecond": self.requests_per_second,
            "durationSeconds": self.duration_seconds,
            "successRate": self.success_rate,
            "errorRate": self.error_rate,
            "peakMemoryMb": self.peak_memory_mb,
            "avgMemoryMb": self.avg_memory_mb,
            "provenance": self.provenance,
        }


TIE = "tie"


@dataclass(frozen=True)
class ComparisonResult:
    winner: str  # a target name or TIE
    score_a: float
    score_b: float
    improvement_pct: float
    latency_delta_ms: float
    throughput_delta_rps: float
    error_rate_delta_pct: float
    memory_delta_mb: float
    profile: str = "balanced"

    @property
    def is_tie(self) -> bool:
        return self.winner == TIE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "winner": self.winner,
            "scoreA": round(self.score_a, 4),
            "scoreB": round(self.score_b, 4),
            "improvement": round(self.improvement_pct, 2),
            "deltas": {
                "latencyMs": self.latency_delta_ms,
                "throughputRps": self.throughput_delta_rps,
                "errorRatePct": self.error_rate_delta_pct,
                "memoryMb": self.memory_delta_mb,
            },
            "profile": self.profile,
        }


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def finished(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.STOPPED)


@dataclass
class RunSession:
    id: str
    target_a: Target
    target_b: Target
    scenario: ScenarioConfig
    status: RunStatus = RunStatus.PENDING
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    results: Dict[str, TargetResult] = field(default_factory=dict)
    aggregators: Dict[str, "MetricsAggregator"] = field(default_factory=dict, repr=False)
    initial_health: Dict[str, HealthInfo] = field(default_factory=dict)
    comparison: Optional[ComparisonResult] = None
    error: Optional[str] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def targets(self) -> Tuple[Target, Target]:
        return (self.target_a, self.target_b)

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def request_stop(self) -> None:
        if not self.status.finished:
            self.status = RunStatus.STOPPED
            self.ended_at = time.time()
        self.stop_event.set()

    def target_result(self, name: str) -> Optional[TargetResult]:
        """Final result if the target finished, else a live snapshot."""
        if name in self.results:
            return self.results[name]
        agg = self.aggregators.get(name)
        return agg.summarize() if agg is not None else None

    def to_dict(self) -> Dict[str, Any]:
        per_target: Dict[str, Any] = {}
        for t in self.targets:
            res = self.target_result(t.name)
            per_target[t.name] = res.to_dict() if res is not None else None
        return {
            **self.summary(),
            "scenario": self.scenario.to_dict(),
            "initialHealth": {k: v.to_dict() for k, v in self.initial_health.items()},
            "perTargetResults": per_target,
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "error": self.error,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "scenario": self.scenario.name,
            "targets": {t.name: t.url for t in self.targets},
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "winner": self.comparison.winner if self.comparison else None,
        }
