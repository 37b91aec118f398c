from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Set

from .metrics import Metrics
from .models import RunSession

logger = logging.getLogger("harness.broadcaster")

RUN_STARTED = "run-started"
PROGRESS = "progress"
SNAPSHOT = "snapshot"
RUN_COMPLETED = "run-completed"
RUN_STOPPED = "run-stopped"
RUN_ERROR = "run-error"


class Observer(Protocol):
    async def send_text(self, data: str) -> None: ...


class ProgressBroadcaster:
    """Fans JSON events out to every connected observer.

    A failed send drops that observer and nothing else.
    """

    def __init__(self, metrics: Optional[Metrics] = None) -> None:
        self.observers: Set[Observer] = set()
        self.metrics = metrics

    def __len__(self) -> int:
        return len(self.observers)

    def add(self, observer: Observer) -> None:
        self.observers.add(observer)
        self._gauge()

    def discard(self, observer: Observer) -> None:
        self.observers.discard(observer)
        self._gauge()

    def _gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_gauge("connected_observers", float(len(self.observers)))

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """Send to all observers; returns how many received it."""
        message = json.dumps(event, default=str)
        delivered = 0
        for observer in list(self.observers):
            try:
                await observer.send_text(message)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping observer after failed send: %s", exc)
                self.discard(observer)
                if self.metrics is not None:
                    self.metrics.inc("broadcast_failures_total")
        return delivered


def _event(kind: str, session: RunSession, /, **fields: Any) -> Dict[str, Any]:
    return {"type": kind, "sessionId": session.id, "timestamp": time.time(), **fields}


def run_started(session: RunSession) -> Dict[str, Any]:
    return _event(
        RUN_STARTED,
        session,
        scenario=session.scenario.to_dict(),
        targets={t.name: t.url for t in session.targets},
    )


def progress(session: RunSession, target: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return _event(PROGRESS, session, target=target, **payload)


def snapshot(session: RunSession) -> Dict[str, Any]:
    elapsed = time.time() - session.started_at
    duration = session.scenario.duration_seconds
    results = {}
    for t in session.targets:
        res = session.target_result(t.name)
        results[t.name] = res.to_dict() if res is not None else None
    return _event(
        SNAPSHOT,
        session,
        status=session.status.value,
        elapsedSeconds=elapsed,
        percent=min(100.0, elapsed / duration * 100.0) if duration else 100.0,
        results=results,
    )


def run_completed(session: RunSession) -> Dict[str, Any]:
    return _event(
        RUN_COMPLETED,
        session,
        comparison=session.comparison.to_dict() if session.comparison else None,
        results={name: r.to_dict() for name, r in session.results.items()},
    )


def run_stopped(session: RunSession) -> Dict[str, Any]:
    return _event(RUN_STOPPED, session, session=session.summary())


def run_error(session: RunSession, error: str) -> Dict[str, Any]:
    return _event(RUN_ERROR, session, error=error)
