from harness.metrics import Metrics


def test_labelled_counters():
    m = Metrics()
    m.inc("requests_total", target="node")
    m.inc("requests_total", 2, target="bun")
    m.inc("sessions_started_total")

    assert m.counter("requests_total", target="node") == 1
    assert m.counter("requests_total") == 3
    assert m.counter("never_touched") == 0

    text = m.snapshot()
    assert "# TYPE harness_requests_total counter" in text
    assert 'harness_requests_total{target="bun"} 2' in text
    assert "harness_sessions_started_total 1" in text


def test_latency_quantiles():
    m = Metrics()
    for v in range(1, 101):
        m.observe_latency_ms(float(v))
    m.set_gauge("service_up", 1.0)

    text = m.snapshot()
    assert 'harness_target_latency_ms{quantile="0.5"} 51.0' in text
    assert 'harness_target_latency_ms{quantile="0.99"} 100.0' in text
    assert "harness_service_up 1.0" in text
