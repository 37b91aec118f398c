from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Dict, List, Optional, Set

import httpx

from . import broadcaster as events
from .aggregator import MetricsAggregator
from .broadcaster import ProgressBroadcaster
from .config import Settings
from .driver import WorkerPoolDriver, pause
from .errors import ScenarioError, SessionNotFound, Unreachable
from .external import ExternalBenchmarkAdapter, ExternalToolStrategy
from .metrics import Metrics
from .models import RunSession, RunStatus, ScenarioConfig, Target, TargetResult
from .probe import probe
from .scoring import get_profile, score
from .strategies import BenchmarkStrategy, RunContext, WorkerPoolStrategy, run_with_fallback

logger = logging.getLogger("harness.server")


def normalize_url(url: str) -> str:
    """Bare hosts such as `node.example.app` are taken to be https."""
    url = url.strip()
    if url and not url.startswith(("http://", "https://")):
        return f"https://{url}"
    return url


class HarnessServer:
    """Owns every session and observer. Built once per process by create_app()."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        strategies: Optional[List[BenchmarkStrategy]] = None,
    ) -> None:
        get_profile(settings.scoring_profile)  # fail fast on a bad profile name
        self.settings = settings
        self.transport = transport
        self.metrics = Metrics()
        self.sessions: Dict[str, RunSession] = {}
        self.broadcaster = ProgressBroadcaster(self.metrics)
        self.driver = WorkerPoolDriver(settings, transport=transport, metrics=self.metrics)
        self.external = ExternalBenchmarkAdapter(settings, fallback=self.driver, metrics=self.metrics)
        self.strategies = strategies if strategies is not None else self._default_strategies()
        self._tasks: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

    def _default_strategies(self) -> List[BenchmarkStrategy]:
        chain: List[BenchmarkStrategy] = []
        if self.settings.use_external_tool:
            chain.append(ExternalToolStrategy(self.external, transport=self.transport))
        chain.append(WorkerPoolStrategy(self.driver))
        return chain

    # lifecycle

    async def start(self) -> None:
        self.metrics.set_gauge("service_up", 1.0)
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        for session in self.sessions.values():
            session.request_stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        self.metrics.set_gauge("service_up", 0.0)

    # sessions

    @property
    def active_sessions(self) -> int:
        return sum(1 for s in self.sessions.values() if not s.status.finished)

    def health(self) -> Dict[str, object]:
        return {
            "status": "healthy",
            "activeSessions": self.active_sessions,
            "connectedObservers": len(self.broadcaster),
        }

    def get_session(self, session_id: str) -> RunSession:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id) from None

    def create_session(self, target_a: Target, target_b: Target, scenario: ScenarioConfig) -> RunSession:
        target_a = Target(target_a.name, normalize_url(target_a.url or ""))
        target_b = Target(target_b.name, normalize_url(target_b.url or ""))
        for t in (target_a, target_b):
            if not t.url:
                raise ScenarioError(f"URL for {t.name} is required")
        if target_a.name == target_b.name:
            raise ScenarioError("target names must differ")
        session_id = f"comparison_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        session = RunSession(id=session_id, target_a=target_a, target_b=target_b, scenario=scenario)
        for t in session.targets:
            session.aggregators[t.name] = MetricsAggregator(t.name, t.url, window=self.settings.latency_window)
        self.sessions[session_id] = session
        self.metrics.inc("sessions_started_total")
        self._update_gauges()
        return session

    def start_session(self, target_a: Target, target_b: Target, scenario: ScenarioConfig) -> RunSession:
        """Create a session and run it in the background."""
        session = self.create_session(target_a, target_b, scenario)
        task = asyncio.create_task(self.run_session(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    async def stop_session(self, session_id: str) -> RunSession:
        session = self.get_session(session_id)
        was_finished = session.status.finished
        session.request_stop()
        if not was_finished:
            logger.info("Session %s stopped", session_id)
            self.metrics.inc("sessions_stopped_total")
            self._update_gauges()
            await self.broadcaster.broadcast(events.run_stopped(session))
        return session

    def _update_gauges(self) -> None:
        self.metrics.set_gauge("active_sessions", float(self.active_sessions))

    # running

    async def run_session(self, session: RunSession) -> RunSession:
        scenario = session.scenario
        logger.info(
            "Starting comparison %s: %s vs %s, %d users, %ds",
            session.id, session.target_a.name, session.target_b.name, scenario.users, scenario.duration_seconds,
        )
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                health = await asyncio.gather(
                    *(probe(client, t, self.settings.health_path, self.settings.probe_timeout_s) for t in session.targets)
                )
            for t, info in zip(session.targets, health):
                session.initial_health[t.name] = info
        except Unreachable as exc:
            return await self._fail(session, str(exc))

        if session.stopped:
            return session
        session.status = RunStatus.RUNNING
        await self.broadcaster.broadcast(events.run_started(session))

        ticker = asyncio.create_task(self._snapshot_loop(session))
        runs = [asyncio.create_task(self._run_target(session, t)) for t in session.targets]
        try:
            results = await asyncio.gather(*runs)
        except Exception as exc:
            logger.exception("Comparison %s failed", session.id)
            # wind down the other target before reporting
            session.stop_event.set()
            await asyncio.gather(*runs, return_exceptions=True)
            return await self._fail(session, str(exc))
        finally:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker

        for t, result in zip(session.targets, results):
            session.results[t.name] = result

        if session.status is RunStatus.STOPPED:
            self._update_gauges()
            return session

        a, b = session.targets
        session.comparison = score(session.results[a.name], session.results[b.name], self.settings.scoring_profile)
        session.status = RunStatus.COMPLETED
        session.ended_at = time.time()
        self.metrics.inc("sessions_completed_total")
        self._update_gauges()
        logger.info(
            "Comparison %s completed: winner %s (%.2f%%)",
            session.id, session.comparison.winner, session.comparison.improvement_pct,
        )
        await self.broadcaster.broadcast(events.run_completed(session))
        return session

    async def _run_target(self, session: RunSession, target: Target) -> TargetResult:
        async def forward(payload: Dict[str, object]) -> None:
            await self.broadcaster.broadcast(events.progress(session, target.name, payload))

        context = RunContext(
            aggregator=session.aggregators[target.name],
            stop_event=session.stop_event,
            on_progress=forward,
        )
        return await run_with_fallback(self.strategies, target, session.scenario, context, self.metrics)

    async def _fail(self, session: RunSession, error: str) -> RunSession:
        if session.status is RunStatus.STOPPED:
            logger.info("Comparison %s was stopped; ignoring later failure: %s", session.id, error)
            return session
        logger.warning("Comparison %s failed: %s", session.id, error)
        session.status = RunStatus.FAILED
        session.error = error
        session.ended_at = time.time()
        self.metrics.inc("sessions_failed_total")
        self._update_gauges()
        await self.broadcaster.broadcast(events.run_error(session, error))
        return session

    async def _snapshot_loop(self, session: RunSession) -> None:
        while not await pause(session.stop_event, self.settings.snapshot_interval_s):
            await self.broadcaster.broadcast(events.snapshot(session))

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_s)
            self.evict_finished()

    def evict_finished(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = [
            sid
            for sid, s in self.sessions.items()
            if s.status.finished and s.ended_at is not None and now - s.ended_at > self.settings.session_retention_s
        ]
        for sid in expired:
            del self.sessions[sid]
        if expired:
            logger.info("Evicted %d finished session(s)", len(expired))
        return len(expired)
