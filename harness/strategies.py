"""Benchmark strategies and the fallback policy between them."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from .aggregator import MetricsAggregator
from .driver import WorkerPoolDriver
from .errors import ExternalToolError
from .metrics import Metrics
from .models import ScenarioConfig, Target, TargetResult

logger = logging.getLogger("harness.strategies")

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class RunContext:
    """Per-target state shared by whichever strategy ends up running."""

    aggregator: MetricsAggregator
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    on_progress: Optional[ProgressCallback] = None

    async def progress(self, payload: Dict[str, Any]) -> None:
        if self.on_progress is not None:
            await self.on_progress(payload)


class BenchmarkStrategy(ABC):
    """One way of producing a TargetResult for a target and scenario.

    Strategies raise ExternalToolError when they cannot do their job;
    run_with_fallback then moves on to the next one in the list.
    """

    name: str = "strategy"

    @abstractmethod
    async def run(self, target: Target, scenario: ScenarioConfig, context: RunContext) -> TargetResult:
        pass


class WorkerPoolStrategy(BenchmarkStrategy):
    name = "worker_pool"

    def __init__(self, driver: WorkerPoolDriver) -> None:
        self.driver = driver

    async def run(self, target: Target, scenario: ScenarioConfig, context: RunContext) -> TargetResult:
        return await self.driver.run(target, scenario, context.aggregator, context.stop_event)


async def run_with_fallback(
    strategies: Sequence[BenchmarkStrategy],
    target: Target,
    scenario: ScenarioConfig,
    context: RunContext,
    metrics: Optional[Metrics] = None,
) -> TargetResult:
    """Try each strategy in order; the first one that returns wins."""
    if not strategies:
        raise ValueError("at least one strategy is required")

    last_error: Optional[ExternalToolError] = None
    for strategy in strategies:
        if context.stop_event.is_set() and last_error is not None:
            # stopped while the previous strategy was failing; nothing left to run
            context.aggregator.finish()
            return context.aggregator.summarize()
        try:
            return await strategy.run(target, scenario, context)
        except ExternalToolError as exc:
            last_error = exc
            logger.warning("%s strategy failed for %s, falling back: %s", strategy.name, target.name, exc)
            if metrics is not None:
                metrics.inc("external_fallbacks_total", target=target.name)
            await context.progress({"status": "fallback", "strategy": strategy.name, "message": str(exc)})

    assert last_error is not None
    raise last_error
