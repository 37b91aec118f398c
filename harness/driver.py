from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from typing import List, Optional

import httpx

from .aggregator import MetricsAggregator
from .config import Settings
from .errors import ScenarioError
from .metrics import Metrics
from .models import Endpoint, Outcome, RequestSample, ScenarioConfig, Target, TargetResult
from .probe import fetch_memory_mb
from .sampler import WeightedSampler

logger = logging.getLogger("harness.driver")


def backoff_base_ms(users: int) -> float:
    # higher load -> shorter think time, so aggregate throughput stays bounded
    if users > 1000:
        return 50.0
    if users > 500:
        return 100.0
    return 200.0


def stagger_delay_s(index: int, users: int, ramp_up_seconds: int, per_user_ramp_ms: int) -> float:
    ramp_ms = min(ramp_up_seconds * 1000.0, users * float(per_user_ramp_ms))
    return (index / users) * ramp_ms / 1000.0


def classify_transport_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "Timeout"
    if isinstance(exc, httpx.ConnectError):
        return "ConnectionError"
    if isinstance(exc, httpx.RemoteProtocolError):
        return "ProtocolError"
    return type(exc).__name__


def http_error_kind(status_code: int) -> str:
    reason = httpx.codes.get_reason_phrase(status_code) or "Unknown"
    return f"HTTP_{status_code}_{reason.replace(' ', '_')}"


async def pause(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`, waking early on stop. Returns True if stopped."""
    if seconds <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def monitor_memory(
    client: httpx.AsyncClient,
    target: Target,
    aggregator: MetricsAggregator,
    stop_event: asyncio.Event,
    settings: Settings,
) -> None:
    """Poll the target's self-reported heap usage until stopped or cancelled.

    Failures are logged and never abort the run.
    """
    while True:
        try:
            memory_mb = await fetch_memory_mb(client, target, settings.metrics_path, settings.probe_timeout_s)
            if memory_mb is not None:
                aggregator.observe_memory(memory_mb)
        except httpx.HTTPError as exc:
            logger.warning("Could not collect metrics for %s: %s", target.name, exc)
        if await pause(stop_event, settings.monitor_interval_s):
            return


class WorkerPoolDriver:
    """In-process load generator: N virtual users looping requests until a deadline."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sampler: Optional[WeightedSampler] = None,
        metrics: Optional[Metrics] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.rng = rng or random.Random()
        self.sampler = sampler or WeightedSampler(self.rng)
        self.metrics = metrics

    def _client(self, users: int) -> httpx.AsyncClient:
        limits = httpx.Limits(max_connections=max(users, 10), max_keepalive_connections=max(users, 10))
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout_s),
            limits=limits,
            transport=self.transport,
        )

    async def run(
        self,
        target: Target,
        scenario: ScenarioConfig,
        aggregator: Optional[MetricsAggregator] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> TargetResult:
        if not target.url:
            raise ScenarioError(f"Target {target.name} has no URL")
        if scenario.users < 1:
            raise ScenarioError("users must be >= 1")
        if not scenario.endpoints:
            raise ScenarioError("scenario has no endpoints")

        if aggregator is None:
            aggregator = MetricsAggregator(target.name, target.url, window=self.settings.latency_window)
        if stop_event is None:
            stop_event = asyncio.Event()

        users = scenario.users
        batch_size = max(1, min(users, self.settings.max_batch_size))
        batches = (users + batch_size - 1) // batch_size
        logger.info(
            "%s: %d users in %d batch(es) for %ds against %s",
            target.name, users, batches, scenario.duration_seconds, target.url,
        )

        loop = asyncio.get_running_loop()
        async with self._client(users) as client:
            aggregator.start()
            deadline = loop.time() + scenario.duration_seconds
            monitor = asyncio.create_task(monitor_memory(client, target, aggregator, stop_event, self.settings))

            workers: List[asyncio.Task] = []
            try:
                for batch in range(batches):
                    start = batch * batch_size
                    end = min(start + batch_size, users)
                    for index in range(start, end):
                        delay = stagger_delay_s(
                            index, users, scenario.ramp_up_seconds, self.settings.per_user_ramp_ms
                        )
                        workers.append(
                            asyncio.create_task(
                                self._worker(client, target, scenario, aggregator, stop_event, deadline, delay)
                            )
                        )
                    if batch < batches - 1:
                        if await pause(stop_event, self.settings.batch_gap_s):
                            break
                        if loop.time() >= deadline:
                            break

                # the only barrier: every worker observes the deadline or stop and returns
                await asyncio.gather(*workers)
            finally:
                for w in workers:
                    if not w.done():
                        w.cancel()
                monitor.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await monitor

        aggregator.finish()
        result = aggregator.summarize()
        logger.info(
            "%s: %d requests, %d errors, %.1f req/s",
            target.name, result.total_requests, result.error_count, result.requests_per_second,
        )
        return result

    async def _worker(
        self,
        client: httpx.AsyncClient,
        target: Target,
        scenario: ScenarioConfig,
        aggregator: MetricsAggregator,
        stop_event: asyncio.Event,
        deadline: float,
        start_delay_s: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        if await pause(stop_event, min(start_delay_s, max(0.0, deadline - loop.time()))):
            return

        base_ms = backoff_base_ms(scenario.users) * self.settings.backoff_scale
        while loop.time() < deadline and not stop_event.is_set():
            endpoint = self.sampler.pick(scenario.endpoints)
            sample = await self.issue(client, target, endpoint)
            aggregator.record(sample)

            delay_s = (base_ms + self.rng.random() * base_ms) / 1000.0
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if await pause(stop_event, min(delay_s, remaining)):
                break

    async def issue(self, client: httpx.AsyncClient, target: Target, endpoint: Endpoint) -> RequestSample:
        """One request. Failures become samples; nothing is raised."""
        url = target.url.rstrip("/") + endpoint.path
        headers = {"Accept": "application/json", "User-Agent": f"LoadTester-{target.name}"}
        started_at_ms = time.time() * 1000.0
        t0 = time.perf_counter()
        try:
            if endpoint.method == "POST":
                resp = await client.post(url, json=endpoint.body or {}, headers=headers)
            else:
                resp = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            kind = classify_transport_error(exc)
            logger.debug("%s %s failed: %s", target.name, endpoint.path, kind)
            if self.metrics is not None:
                self.metrics.inc("requests_total", target=target.name)
                self.metrics.inc("request_errors_total", target=target.name, kind=kind)
            return RequestSample(
                target_name=target.name,
                endpoint=endpoint.path,
                started_at_ms=started_at_ms,
                latency_ms=dt_ms,
                outcome=Outcome.TRANSPORT_ERROR,
                error_kind=kind,
            )

        dt_ms = (time.perf_counter() - t0) * 1000.0
        if self.metrics is not None:
            self.metrics.inc("requests_total", target=target.name)
            self.metrics.observe_latency_ms(dt_ms)

        if resp.is_success:
            return RequestSample(
                target_name=target.name,
                endpoint=endpoint.path,
                started_at_ms=started_at_ms,
                latency_ms=dt_ms,
                outcome=Outcome.SUCCESS,
                status_code=resp.status_code,
            )
        kind = http_error_kind(resp.status_code)
        if self.metrics is not None:
            self.metrics.inc("request_errors_total", target=target.name, kind=kind)
        return RequestSample(
            target_name=target.name,
            endpoint=endpoint.path,
            started_at_ms=started_at_ms,
            latency_ms=dt_ms,
            outcome=Outcome.HTTP_ERROR,
            status_code=resp.status_code,
            error_kind=kind,
        )

