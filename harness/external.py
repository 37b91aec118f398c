"""Adapter for the external HTTP benchmarking tool (oha).

The tool is an optimisation only: every failure surfaces as
ExternalToolError so the caller can fall back to the in-process driver.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import re
import signal
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from .aggregator import MetricsAggregator
from .config import Settings
from .driver import WorkerPoolDriver, http_error_kind, monitor_memory, pause
from .errors import ExternalToolError
from .metrics import Metrics
from .models import Endpoint, ScenarioConfig, Target, TargetResult
from .strategies import BenchmarkStrategy, RunContext, WorkerPoolStrategy, run_with_fallback

logger = logging.getLogger("harness.external")

ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

_SECS = r"([\d.]+)\s*secs?"
TOTAL_RE = re.compile(r"Total:\s*" + _SECS, re.IGNORECASE)
SLOWEST_RE = re.compile(r"Slowest:\s*" + _SECS, re.IGNORECASE)
FASTEST_RE = re.compile(r"Fastest:\s*" + _SECS, re.IGNORECASE)
AVERAGE_RE = re.compile(r"Average:\s*" + _SECS, re.IGNORECASE)
RPS_RE = re.compile(r"Requests/sec:\s*([\d.]+)", re.IGNORECASE)
PERCENTILE_RE = re.compile(r"([\d.]+)%\s+in\s+" + _SECS, re.IGNORECASE)
STATUS_RE = re.compile(r"\[(\d{3})\]\s+(\d+)\s+responses?", re.IGNORECASE)
ERROR_RE = re.compile(r"\[(\d+)\]\s+(.+)")

INTERRUPT_GRACE_S = 3.0


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


@dataclass(frozen=True)
class ToolEvent:
    kind: str  # "line" or "result"
    message: str = ""
    result: Optional[TargetResult] = None


def _result(
    target: Target,
    endpoint_path: str,
    *,
    success: int,
    errors_by_kind: Dict[str, int],
    avg_ms: float,
    min_ms: float,
    max_ms: float,
    percentiles_ms: Dict[str, float],
    rps: float,
    duration_s: float,
) -> TargetResult:
    errors = sum(errors_by_kind.values())
    total = success + errors
    if duration_s > 0 and rps <= 0:
        rps = total / duration_s
    return TargetResult(
        target_name=target.name,
        url=target.url,
        total_requests=total,
        success_count=success,
        error_count=errors,
        errors_by_kind=errors_by_kind,
        requests_by_endpoint={endpoint_path: total},
        latency_samples=[],
        avg_latency_ms=avg_ms,
        min_latency_ms=min_ms,
        max_latency_ms=max_ms,
        p50_latency_ms=percentiles_ms.get("p50", 0.0),
        p95_latency_ms=percentiles_ms.get("p95", 0.0),
        p99_latency_ms=percentiles_ms.get("p99", 0.0),
        requests_per_second=rps,
        duration_seconds=duration_s,
        provenance="external",
    )


def _split_status(status_counts: Dict[int, int]) -> Tuple[int, Dict[str, int]]:
    success = 0
    errors: Dict[str, int] = {}
    for code, count in status_counts.items():
        if 200 <= code < 300:
            success += count
        else:
            kind = http_error_kind(code)
            errors[kind] = errors.get(kind, 0) + count
    return success, errors


def parse_json_report(data: Any, target: Target, endpoint_path: str, duration_s: float) -> TargetResult:
    """Convert oha's `--output-format json` document (times in seconds)."""
    if not isinstance(data, dict) or not isinstance(data.get("summary"), dict):
        raise ExternalToolError("oha JSON output has no summary")
    summary = data["summary"]
    try:
        status_counts = {int(k): int(v) for k, v in (data.get("statusCodeDistribution") or {}).items()}
        success, errors = _split_status(status_counts)
        for message, count in (data.get("errorDistribution") or {}).items():
            errors[str(message)] = errors.get(str(message), 0) + int(count)

        pct_raw = data.get("latencyPercentiles") or {}
        percentiles = {
            key: float(pct_raw[key] or 0.0) * 1000.0 for key in ("p50", "p95", "p99") if key in pct_raw
        }
        return _result(
            target,
            endpoint_path,
            success=success,
            errors_by_kind=errors,
            avg_ms=float(summary.get("average") or 0.0) * 1000.0,
            min_ms=float(summary.get("fastest") or 0.0) * 1000.0,
            max_ms=float(summary.get("slowest") or 0.0) * 1000.0,
            percentiles_ms=percentiles,
            rps=float(summary.get("requestsPerSec") or 0.0),
            duration_s=float(summary.get("total") or duration_s),
        )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ExternalToolError(f"malformed oha JSON output: {exc}") from exc


def parse_text_report(text: str, target: Target, endpoint_path: str, duration_s: float) -> TargetResult:
    """Parse oha's plain-text summary, as printed with --no-tui."""
    rps_match = RPS_RE.search(text)
    status_counts: Dict[int, int] = {}
    for code, count in STATUS_RE.findall(text):
        status_counts[int(code)] = status_counts.get(int(code), 0) + int(count)
    if rps_match is None and not status_counts:
        raise ExternalToolError("unrecognised oha output")

    success, errors = _split_status(status_counts)
    _, _, error_section = text.partition("Error distribution:")
    for count, message in ERROR_RE.findall(error_section):
        message = message.strip()
        errors[message] = errors.get(message, 0) + int(count)

    percentiles: Dict[str, float] = {}
    for pct, secs in PERCENTILE_RE.findall(text):
        key = {50.0: "p50", 95.0: "p95", 99.0: "p99"}.get(float(pct))
        if key:
            percentiles[key] = float(secs) * 1000.0

    def secs_ms(regex: re.Pattern) -> float:
        m = regex.search(text)
        return float(m.group(1)) * 1000.0 if m else 0.0

    total_match = TOTAL_RE.search(text)
    return _result(
        target,
        endpoint_path,
        success=success,
        errors_by_kind=errors,
        avg_ms=secs_ms(AVERAGE_RE),
        min_ms=secs_ms(FASTEST_RE),
        max_ms=secs_ms(SLOWEST_RE),
        percentiles_ms=percentiles,
        rps=float(rps_match.group(1)) if rps_match else 0.0,
        duration_s=float(total_match.group(1)) if total_match else float(duration_s),
    )


def merge_results(target: Target, results: Sequence[TargetResult]) -> TargetResult:
    """Combine per-endpoint runs. Latency figures are weighted by request count."""
    total = sum(r.total_requests for r in results)
    duration = sum(r.duration_seconds for r in results)
    errors: Dict[str, int] = {}
    by_endpoint: Dict[str, int] = {}
    for r in results:
        for k, v in r.errors_by_kind.items():
            errors[k] = errors.get(k, 0) + v
        for k, v in r.requests_by_endpoint.items():
            by_endpoint[k] = by_endpoint.get(k, 0) + v

    def weighted(attr: str) -> float:
        if total == 0:
            return 0.0
        return sum(getattr(r, attr) * r.total_requests for r in results) / total

    mins = [r.min_latency_ms for r in results if r.total_requests]
    return TargetResult(
        target_name=target.name,
        url=target.url,
        total_requests=total,
        success_count=sum(r.success_count for r in results),
        error_count=sum(r.error_count for r in results),
        errors_by_kind=errors,
        requests_by_endpoint=by_endpoint,
        latency_samples=[],
        avg_latency_ms=weighted("avg_latency_ms"),
        min_latency_ms=min(mins, default=0.0),
        max_latency_ms=max((r.max_latency_ms for r in results), default=0.0),
        p50_latency_ms=weighted("p50_latency_ms"),
        p95_latency_ms=weighted("p95_latency_ms"),
        p99_latency_ms=weighted("p99_latency_ms"),
        requests_per_second=(total / duration) if duration > 0 else 0.0,
        duration_seconds=duration,
        provenance="external",
    )


def endpoint_durations(endpoints: Sequence[Endpoint], duration_seconds: int) -> List[int]:
    """Split the run time across endpoints by weight, at least 1s each."""
    total_weight = sum(e.weight for e in endpoints)
    return [max(1, round(duration_seconds * e.weight / total_weight)) for e in endpoints]


class ExternalBenchmarkAdapter:
    def __init__(
        self,
        settings: Settings,
        *,
        fallback: Optional[WorkerPoolDriver] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.settings = settings
        self.fallback = fallback or WorkerPoolDriver(settings, metrics=metrics)
        self.metrics = metrics

    def build_args(self, url: str, duration_s: int, concurrency: int, output_file: Optional[str] = None) -> List[str]:
        args = [
            self.settings.external_tool_path,
            "-z", f"{duration_s}s",
            "-c", str(concurrency),
            "--no-tui",
        ]
        if output_file is not None:
            args += ["--output-format", "json", "-o", output_file]
        args.append(url)
        return args

    def concurrency_for(self, scenario: ScenarioConfig) -> int:
        cap = self.settings.external_max_connections
        return min(scenario.users, cap) if cap > 0 else scenario.users

    async def _spawn(self, args: List[str], text_mode: bool) -> asyncio.subprocess.Process:
        env = None
        if text_mode:
            env = {**os.environ, "TERM": "xterm-256color", "COLUMNS": "80", "LINES": "24"}
        logger.info("Running %s", " ".join(args))
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            raise ExternalToolError(f"cannot start {args[0]}: {exc}") from exc

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process, interrupt: bool = False) -> None:
        """Stop the tool. With `interrupt`, SIGINT first so oha can still print its summary."""
        if proc.returncode is not None:
            return
        if interrupt:
            with contextlib.suppress(ProcessLookupError):
                proc.send_signal(signal.SIGINT)
            try:
                await asyncio.wait_for(proc.wait(), timeout=INTERRUPT_GRACE_S)
                return
            except asyncio.TimeoutError:
                pass
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    async def _watch(self, proc: asyncio.subprocess.Process, stop_event: asyncio.Event, timeout_s: float) -> None:
        # the subprocess cannot see the stop flag, so signal it explicitly
        stopped = await pause(stop_event, timeout_s)
        if proc.returncode is None:
            if stopped:
                logger.info("Stop requested, interrupting %s", self.settings.external_tool_path)
            else:
                logger.warning("%s exceeded %.0fs, terminating", self.settings.external_tool_path, timeout_s)
            await self._terminate(proc, interrupt=stopped)

    @staticmethod
    async def _lines(proc: asyncio.subprocess.Process) -> AsyncIterator[str]:
        assert proc.stdout is not None
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                return
            line = strip_ansi(raw.decode("utf-8", errors="replace")).strip()
            if line:
                yield line

    async def stream(
        self,
        target: Target,
        endpoint: Endpoint,
        duration_s: int,
        concurrency: int,
        stop_event: asyncio.Event,
    ) -> AsyncIterator[ToolEvent]:
        """Run the tool in text mode, yielding each output line, then the parsed result."""
        url = target.url.rstrip("/") + endpoint.path
        proc = await self._spawn(self.build_args(url, duration_s, concurrency), text_mode=True)
        watcher = asyncio.create_task(
            self._watch(proc, stop_event, duration_s + self.settings.external_timeout_grace_s)
        )
        collected: List[str] = []
        try:
            async for line in self._lines(proc):
                collected.append(line)
                yield ToolEvent(kind="line", message=line)
            code = await proc.wait()
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            await self._terminate(proc)

        # an interrupted run may still have printed a usable summary
        if code != 0 and not stop_event.is_set():
            tail = "\n".join(collected[-5:])
            raise ExternalToolError(f"{self.settings.external_tool_path} exited with code {code}: {tail}")
        result = parse_text_report("\n".join(collected), target, endpoint.path, duration_s)
        yield ToolEvent(kind="result", result=result)

    async def run_tool(
        self,
        target: Target,
        endpoint: Endpoint,
        duration_s: int,
        concurrency: int,
        stop_event: asyncio.Event,
    ) -> TargetResult:
        """Run the tool with JSON file output. The file is always removed afterwards."""
        url = target.url.rstrip("/") + endpoint.path
        fd, output_file = tempfile.mkstemp(prefix=f"oha-{target.name}-", suffix=".json")
        os.close(fd)
        try:
            proc = await self._spawn(self.build_args(url, duration_s, concurrency, output_file), text_mode=False)
            watcher = asyncio.create_task(
                self._watch(proc, stop_event, duration_s + self.settings.external_timeout_grace_s)
            )
            collected: List[str] = []
            try:
                async for line in self._lines(proc):
                    collected.append(line)
                code = await proc.wait()
            finally:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
                await self._terminate(proc)

            if code != 0 and not stop_event.is_set():
                tail = "\n".join(collected[-5:])
                raise ExternalToolError(f"{self.settings.external_tool_path} exited with code {code}: {tail}")
            try:
                data = json.loads(Path(output_file).read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise ExternalToolError(f"cannot read oha output: {exc}") from exc
            return parse_json_report(data, target, endpoint.path, duration_s)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(output_file)

    async def run_external(
        self,
        target: Target,
        scenario: ScenarioConfig,
        stop_event: Optional[asyncio.Event] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> TargetResult:
        """Benchmark with the external tool, falling back to the worker pool."""
        context = RunContext(
            aggregator=MetricsAggregator(target.name, target.url, window=self.settings.latency_window),
            stop_event=stop_event or asyncio.Event(),
        )
        strategies = [
            ExternalToolStrategy(self, transport=transport),
            WorkerPoolStrategy(self.fallback),
        ]
        return await run_with_fallback(strategies, target, scenario, context, self.metrics)


class ExternalToolStrategy(BenchmarkStrategy):
    """Runs the tool once per endpoint, sharing the run time by weight.

    With a progress callback in the context the streamed text mode is used
    and every output line is forwarded; otherwise JSON file mode.
    """

    name = "external"

    def __init__(
        self,
        adapter: ExternalBenchmarkAdapter,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.adapter = adapter
        self.transport = transport

    async def run(self, target: Target, scenario: ScenarioConfig, context: RunContext) -> TargetResult:
        settings = self.adapter.settings
        concurrency = self.adapter.concurrency_for(scenario)
        durations = endpoint_durations(scenario.endpoints, scenario.duration_seconds)
        endpoints = scenario.endpoints
        results: List[TargetResult] = []

        async with httpx.AsyncClient(timeout=settings.probe_timeout_s, transport=self.transport) as client:
            context.aggregator.start()
            monitor = asyncio.create_task(
                monitor_memory(client, target, context.aggregator, context.stop_event, settings)
            )
            try:
                for i, (endpoint, duration_s) in enumerate(zip(endpoints, durations)):
                    if context.stop_event.is_set():
                        break
                    await context.progress(
                        {
                            "status": "running",
                            "endpoint": endpoint.path,
                            "percent": i / len(endpoints) * 100.0,
                            "message": f"Starting load test for {endpoint.path} ({i + 1}/{len(endpoints)})",
                        }
                    )
                    try:
                        if context.on_progress is None:
                            result = await self.adapter.run_tool(
                                target, endpoint, duration_s, concurrency, context.stop_event
                            )
                        else:
                            result = await self._streamed(target, endpoint, duration_s, concurrency, context)
                    except ExternalToolError as exc:
                        if not context.stop_event.is_set():
                            raise
                        # interrupted with nothing usable; keep the endpoints that finished
                        logger.info(
                            "%s: stopped during %s (%s), keeping %d finished endpoint(s)",
                            target.name, endpoint.path, exc, len(results),
                        )
                        break
                    results.append(result)
            finally:
                monitor.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await monitor

        context.aggregator.finish()
        merged = merge_results(target, results)
        memory = context.aggregator.summarize()
        if context.stop_event.is_set():
            await context.progress({"status": "stopped", "message": f"Stopped after {len(results)} endpoint(s)"})
        else:
            await context.progress({"status": "completed", "percent": 100.0, "message": "All endpoints completed"})
        return dataclasses.replace(merged, peak_memory_mb=memory.peak_memory_mb, avg_memory_mb=memory.avg_memory_mb)

    async def _streamed(
        self,
        target: Target,
        endpoint: Endpoint,
        duration_s: int,
        concurrency: int,
        context: RunContext,
    ) -> TargetResult:
        result: Optional[TargetResult] = None
        async for event in self.adapter.stream(target, endpoint, duration_s, concurrency, context.stop_event):
            if event.kind == "line":
                await context.progress({"status": "progress", "endpoint": endpoint.path, "message": event.message})
            elif event.kind == "result":
                result = event.result
        if result is None:
            raise ExternalToolError(f"no result for {endpoint.path}")
        return result
