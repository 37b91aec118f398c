import asyncio
import dataclasses
import time

import httpx
import pytest

from conftest import NODE, make_scenario
from harness.driver import (
    WorkerPoolDriver,
    backoff_base_ms,
    classify_transport_error,
    http_error_kind,
    pause,
    stagger_delay_s,
)
from harness.errors import ScenarioError
from harness.metrics import Metrics
from harness.models import Endpoint, Outcome, ScenarioConfig, Target


def test_backoff_shrinks_with_load():
    assert backoff_base_ms(10) == 200.0
    assert backoff_base_ms(501) == 100.0
    assert backoff_base_ms(1001) == 50.0


def test_stagger_is_capped_by_ramp_up():
    assert stagger_delay_s(0, 10, 5, 5) == 0.0
    # 10 users * 5ms = 50ms spread, well under the 5s ramp-up
    assert stagger_delay_s(5, 10, 5, 5) == pytest.approx(0.025)
    assert stagger_delay_s(5, 10, 0, 5) == 0.0


def test_error_kinds():
    assert http_error_kind(404) == "HTTP_404_Not_Found"
    assert http_error_kind(503) == "HTTP_503_Service_Unavailable"
    request = httpx.Request("GET", "http://node.test/")
    assert classify_transport_error(httpx.ReadTimeout("slow", request=request)) == "Timeout"
    assert classify_transport_error(httpx.ConnectError("refused", request=request)) == "ConnectionError"


@pytest.mark.asyncio
async def test_pause_wakes_on_stop():
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)
    t0 = time.perf_counter()
    assert await pause(stop, 10.0) is True
    assert time.perf_counter() - t0 < 2.0
    assert await pause(asyncio.Event(), 0.01) is False


@pytest.mark.asyncio
async def test_run_against_stub(fast_settings, transport, stubs):
    metrics = Metrics()
    driver = WorkerPoolDriver(fast_settings, transport=transport, metrics=metrics)
    scenario = ScenarioConfig(
        name="health",
        users=4,
        duration_seconds=2,
        ramp_up_seconds=0,
        endpoints=(Endpoint("/health", weight=100),),
    )

    t0 = time.perf_counter()
    result = await driver.run(NODE, scenario)
    elapsed = time.perf_counter() - t0

    assert result.error_count == 0
    assert result.total_requests > 0
    assert result.success_count == result.total_requests
    assert result.requests_by_endpoint == {"/health": result.total_requests}
    assert result.provenance == "in_process"
    assert result.peak_memory_mb == 48.0
    assert 1.5 <= elapsed < 10.0
    assert metrics.counter("requests_total") == result.total_requests


@pytest.mark.asyncio
async def test_http_errors_are_counted(fast_settings, transport):
    driver = WorkerPoolDriver(fast_settings, transport=transport)
    result = await driver.run(NODE, make_scenario(paths=("/missing",)))

    assert result.total_requests > 0
    assert result.success_count == 0
    assert result.errors_by_kind == {"HTTP_404_Not_Found": result.total_requests}
    assert result.latency_samples


@pytest.mark.asyncio
async def test_transport_errors_are_counted(fast_settings, transport, stubs):
    stubs.broken.add("node.test")
    driver = WorkerPoolDriver(fast_settings, transport=transport)
    result = await driver.run(NODE, make_scenario())

    assert result.total_requests > 0
    assert result.errors_by_kind == {"ConnectionError": result.total_requests}
    assert result.latency_samples == []
    assert result.peak_memory_mb == 0.0


@pytest.mark.asyncio
async def test_post_sends_json_body(fast_settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            seen.append(request.content)
        return httpx.Response(201)

    driver = WorkerPoolDriver(fast_settings, transport=httpx.MockTransport(handler))
    scenario = dataclasses.replace(
        make_scenario(users=1),
        endpoints=(Endpoint("/api/orders", method="POST", body={"bookId": 1}),),
    )
    result = await driver.run(NODE, scenario)
    assert result.error_count == 0
    assert seen and b'"bookId"' in seen[0]


@pytest.mark.asyncio
async def test_stop_ends_run_early(fast_settings, transport, stubs):
    driver = WorkerPoolDriver(fast_settings, transport=transport)
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.3, stop.set)

    t0 = time.perf_counter()
    result = await asyncio.wait_for(driver.run(NODE, make_scenario(users=3, duration=30), stop_event=stop), 10)
    assert time.perf_counter() - t0 < 5.0
    assert result.total_requests > 0
    assert result.success_count + result.error_count == result.total_requests

    # every worker has returned, so nothing more reaches the target
    calls = stubs.calls
    await asyncio.sleep(0.3)
    assert stubs.calls == calls


@pytest.mark.asyncio
async def test_in_flight_requests_are_recorded_after_stop(fast_settings, transport, stubs):
    stubs.delay_s["node.test"] = 0.5
    driver = WorkerPoolDriver(fast_settings, transport=transport)
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.2, stop.set)

    t0 = time.perf_counter()
    result = await driver.run(NODE, make_scenario(users=3, duration=30), stop_event=stop)

    # each worker had one request outstanding when the stop arrived
    assert time.perf_counter() - t0 >= 0.4
    assert result.total_requests == 3
    assert result.success_count == 3
    assert len(result.latency_samples) == 3
    assert min(result.latency_samples) >= 400.0

@pytest.mark.asyncio
async def test_invalid_input_rejected(fast_settings, transport):
    driver = WorkerPoolDriver(fast_settings, transport=transport)
    with pytest.raises(ScenarioError):
        await driver.run(NODE, make_scenario(users=0))
    with pytest.raises(ScenarioError):
        await driver.run(NODE, make_scenario(paths=()))
    with pytest.raises(ScenarioError):
        await driver.run(Target("node", ""), make_scenario())


@pytest.mark.asyncio
async def test_issue_never_raises(fast_settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    driver = WorkerPoolDriver(fast_settings)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sample = await driver.issue(client, NODE, Endpoint("/api/books"))
    assert sample.outcome is Outcome.TRANSPORT_ERROR
    assert sample.error_kind == "Timeout"
    assert not sample.ok
