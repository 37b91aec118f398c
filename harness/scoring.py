"""Composite scoring of two targets' results.

Each metric is normalised against the better of the two targets, so
scores are relative to this pair only:

    throughput  rps / max(rps_a, rps_b)
    latency     min(avg_a, avg_b) / avg
    success     success_rate / 100
    memory      min(peak_a, peak_b) / peak   (1.0 for both if either is unknown)

The weighted sum is scaled to 0-100. Weights come from a named profile.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

from .models import TIE, ComparisonResult, TargetResult

SCORE_PRECISION = 6


@dataclass(frozen=True)
class ScoreWeights:
    throughput: float
    latency: float
    success: float
    memory: float

    @property
    def total(self) -> float:
        return self.throughput + self.latency + self.success + self.memory


PROFILES: Dict[str, ScoreWeights] = {
    "balanced": ScoreWeights(throughput=0.30, latency=0.30, success=0.25, memory=0.15),
    "memory": ScoreWeights(throughput=0.05, latency=0.05, success=0.05, memory=0.85),
}


def get_profile(name: str) -> ScoreWeights:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown scoring profile {name!r}; expected one of {sorted(PROFILES)}") from None


def _higher_is_better(value: float, other: float) -> float:
    best = max(value, other)
    return value / best if best > 0 else 1.0


def _lower_is_better(value: float, other: float) -> float:
    if value <= 0:
        return 1.0
    best = min(value, other) if other > 0 else value
    return best / value


def composite_scores(a: TargetResult, b: TargetResult, weights: ScoreWeights) -> Tuple[float, float]:
    memory_known = a.peak_memory_mb > 0 and b.peak_memory_mb > 0

    def one(x: TargetResult, y: TargetResult) -> float:
        memory = _lower_is_better(x.peak_memory_mb, y.peak_memory_mb) if memory_known else 1.0
        # traffic with no measured latency means every request errored
        if x.total_requests > 0 and x.avg_latency_ms <= 0:
            latency = 0.0
        else:
            latency = _lower_is_better(x.avg_latency_ms, y.avg_latency_ms)
        raw = (
            weights.throughput * _higher_is_better(x.requests_per_second, y.requests_per_second)
            + weights.latency * latency
            + weights.success * (x.success_rate / 100.0)
            + weights.memory * memory
        )
        return 100.0 * raw / weights.total if weights.total > 0 else 0.0

    return one(a, b), one(b, a)


def score(a: TargetResult, b: TargetResult, profile: str = "balanced") -> ComparisonResult:
    """Winner has the strictly higher score; equal scores go to fewer errors, else a tie."""
    weights = get_profile(profile)
    score_a, score_b = composite_scores(a, b, weights)
    ra, rb = round(score_a, SCORE_PRECISION), round(score_b, SCORE_PRECISION)

    if ra > rb:
        winner = a.target_name
    elif rb > ra:
        winner = b.target_name
    elif a.error_count < b.error_count:
        winner = a.target_name
    elif b.error_count < a.error_count:
        winner = b.target_name
    else:
        winner = TIE

    if winner == TIE or ra == rb:
        improvement = 0.0
    else:
        hi, lo = max(score_a, score_b), min(score_a, score_b)
        improvement = (hi - lo) / lo * 100.0 if lo > 0 else 100.0

    return ComparisonResult(
        winner=winner,
        score_a=score_a,
        score_b=score_b,
        improvement_pct=improvement,
        latency_delta_ms=a.avg_latency_ms - b.avg_latency_ms,
        throughput_delta_rps=a.requests_per_second - b.requests_per_second,
        error_rate_delta_pct=a.error_rate - b.error_rate,
        memory_delta_mb=a.peak_memory_mb - b.peak_memory_mb,
        profile=profile,
    )
