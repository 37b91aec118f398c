import pytest

from harness.models import TIE, TargetResult
from harness.scoring import PROFILES, ScoreWeights, composite_scores, get_profile, score


def result(name, total=1000, errors=0, rps=100.0, avg=10.0, peak=50.0):
    return TargetResult(
        target_name=name,
        url=f"http://{name}.test",
        total_requests=total,
        success_count=total - errors,
        error_count=errors,
        avg_latency_ms=avg,
        requests_per_second=rps,
        peak_memory_mb=peak,
    )


def test_identical_results_tie():
    cmp_ = score(result("node"), result("bun"))
    assert cmp_.winner == TIE
    assert cmp_.is_tie
    assert cmp_.improvement_pct == 0.0
    assert cmp_.score_a == pytest.approx(cmp_.score_b)


def test_faster_target_wins():
    cmp_ = score(result("node", rps=100.0, avg=20.0), result("bun", rps=200.0, avg=10.0))
    assert cmp_.winner == "bun"
    assert cmp_.score_b > cmp_.score_a
    assert cmp_.improvement_pct == pytest.approx((cmp_.score_b - cmp_.score_a) / cmp_.score_a * 100.0)
    assert cmp_.latency_delta_ms == pytest.approx(10.0)
    assert cmp_.throughput_delta_rps == pytest.approx(-100.0)


def test_perfect_target_scores_100():
    cmp_ = score(result("node", rps=200.0, avg=5.0, peak=10.0), result("bun", rps=100.0, avg=10.0, peak=20.0))
    assert cmp_.score_a == pytest.approx(100.0)
    assert 0.0 <= cmp_.score_b <= 100.0


def test_equal_scores_break_on_fewer_errors():
    # same 90% success rate, but node has fewer errors in absolute terms
    a = result("node", total=100, errors=10)
    b = result("bun", total=200, errors=20)
    cmp_ = score(a, b)
    assert cmp_.winner == "node"
    assert cmp_.improvement_pct == 0.0


def test_unknown_memory_is_neutral():
    cmp_ = score(result("node", peak=0.0), result("bun", peak=500.0))
    assert cmp_.winner == TIE


def test_profiles_change_the_winner():
    lean = result("node", rps=100.0, peak=50.0)
    fast = result("bun", rps=200.0, peak=100.0)
    assert score(lean, fast, "balanced").winner == "bun"
    assert score(lean, fast, "memory").winner == "node"
    assert score(lean, fast, "memory").profile == "memory"


def test_unknown_profile():
    assert set(PROFILES) == {"balanced", "memory"}
    with pytest.raises(ValueError):
        get_profile("fastest")


def test_to_dict_shape():
    d = score(result("node"), result("bun", rps=150.0)).to_dict()
    assert d["winner"] == "bun"
    assert set(d) == {"winner", "scoreA", "scoreB", "improvement", "deltas", "profile"}
    assert set(d["deltas"]) == {"latencyMs", "throughputRps", "errorRatePct", "memoryMb"}


def test_all_errors_earns_no_latency_credit():
    broken = result("node", total=100, errors=100, rps=0.0, avg=0.0)
    healthy = result("bun", total=100, avg=10.0)
    a, b = composite_scores(broken, healthy, ScoreWeights(0.0, 1.0, 0.0, 0.0))
    assert a == pytest.approx(0.0)
    assert b == pytest.approx(100.0)
    assert score(broken, healthy).winner == "bun"
