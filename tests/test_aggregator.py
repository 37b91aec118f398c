import pytest

from harness.aggregator import MetricsAggregator, percentile
from harness.models import Outcome, RequestSample


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def sample(outcome=Outcome.SUCCESS, latency=10.0, endpoint="/api/books", status=200, kind=None):
    return RequestSample(
        target_name="node",
        endpoint=endpoint,
        started_at_ms=0.0,
        latency_ms=latency,
        outcome=outcome,
        status_code=status,
        error_kind=kind,
    )


def test_counts_add_up():
    agg = MetricsAggregator("node", "http://node.test")
    agg.record(sample())
    agg.record(sample(endpoint="/api/authors"))
    agg.record(sample(Outcome.HTTP_ERROR, status=500, kind="HTTP_500_Internal_Server_Error"))
    agg.record(sample(Outcome.TRANSPORT_ERROR, status=None, kind="Timeout"))

    res = agg.summarize()
    assert res.total_requests == 4
    assert res.success_count + res.error_count == res.total_requests
    assert sum(res.errors_by_kind.values()) == res.error_count
    assert res.errors_by_kind == {"HTTP_500_Internal_Server_Error": 1, "Timeout": 1}
    assert res.requests_by_endpoint == {"/api/books": 3, "/api/authors": 1}
    assert res.success_rate == pytest.approx(50.0)


def test_transport_errors_have_no_latency():
    agg = MetricsAggregator("node", "http://node.test")
    agg.record(sample(latency=20.0))
    agg.record(sample(Outcome.TRANSPORT_ERROR, latency=5000.0, status=None, kind="ConnectionError"))

    res = agg.summarize()
    assert res.latency_samples == [20.0]
    assert res.avg_latency_ms == pytest.approx(20.0)
    assert res.max_latency_ms == pytest.approx(20.0)


def test_zero_samples():
    res = MetricsAggregator("node", "http://node.test").summarize()
    assert res.total_requests == 0
    assert res.requests_per_second == 0.0
    assert res.avg_latency_ms == 0.0
    assert res.p99_latency_ms == 0.0
    assert res.success_rate == 0.0
    assert res.error_rate == 0.0


def test_percentiles_use_floor_index():
    values = [float(v) for v in range(1, 101)]
    assert percentile(values, 0.50) == 51.0
    assert percentile(values, 0.95) == 96.0
    assert percentile(values, 0.99) == 100.0
    assert percentile([], 0.5) == 0.0
    assert percentile([7.0], 0.99) == 7.0


def test_percentiles_are_ordered():
    agg = MetricsAggregator("node", "http://node.test")
    for v in (30, 1, 18, 250, 4, 4, 99, 12, 60, 7):
        agg.record(sample(latency=float(v)))
    res = agg.summarize()
    assert res.min_latency_ms <= res.p50_latency_ms <= res.p95_latency_ms <= res.p99_latency_ms <= res.max_latency_ms


def test_window_is_bounded_but_counts_are_exact():
    agg = MetricsAggregator("node", "http://node.test", window=5)
    for v in range(20):
        agg.record(sample(latency=float(v)))
    res = agg.summarize()
    assert res.total_requests == 20
    assert res.latency_samples == [15.0, 16.0, 17.0, 18.0, 19.0]
    assert res.min_latency_ms == 0.0


def test_summarize_is_idempotent_after_finish():
    clock = FakeClock()
    agg = MetricsAggregator("node", "http://node.test", clock=clock)
    agg.start()
    for _ in range(10):
        clock.now += 0.1
        agg.record(sample())
    clock.now += 0.5
    agg.finish()

    first = agg.summarize()
    clock.now += 60.0
    second = agg.summarize()
    assert first == second
    assert first.duration_seconds == pytest.approx(1.5)
    assert first.requests_per_second == pytest.approx(10 / 1.5)


def test_memory_observations():
    agg = MetricsAggregator("node", "http://node.test")
    assert agg.peak_memory_mb == 0.0
    for mb in (40.0, 55.0, 45.0):
        agg.observe_memory(mb)
    res = agg.summarize()
    assert agg.peak_memory_mb == 55.0
    assert res.peak_memory_mb == 55.0
    assert res.avg_memory_mb == pytest.approx(140.0 / 3)
