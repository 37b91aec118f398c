from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import Unreachable
from .models import HealthInfo, Target

logger = logging.getLogger("harness.probe")


async def probe(
    client: httpx.AsyncClient,
    target: Target,
    health_path: str = "/api/health",
    timeout_s: float = 5.0,
) -> HealthInfo:
    """Pre-flight liveness check. Any failure raises Unreachable; no retries."""
    url = target.url.rstrip("/") + health_path
    try:
        resp = await client.get(url, timeout=timeout_s, headers={"Accept": "application/json"})
    except httpx.HTTPError as exc:
        raise Unreachable(target.name, exc) from exc

    if resp.status_code != 200:
        raise Unreachable(target.name, f"HTTP {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as exc:
        raise Unreachable(target.name, "health response is not JSON") from exc
    if not isinstance(body, dict):
        raise Unreachable(target.name, "health response is not an object")

    try:
        uptime = float(body.get("uptime") or 0.0)
    except (TypeError, ValueError):
        uptime = 0.0
    info = HealthInfo(
        status=str(body.get("status", "unknown")),
        runtime=str(body.get("runtime", "unknown")),
        uptime_s=uptime,
        raw=body,
    )
    logger.info("%s is up (%s, uptime %ds)", target.name, info.runtime, int(info.uptime_s))
    return info


def _memory_from(body: Dict[str, Any]) -> Optional[float]:
    # /api/performance/metrics nests under "current"; /api/system/metrics does not
    current = body.get("current") if isinstance(body.get("current"), dict) else body
    memory = current.get("memory")
    if not isinstance(memory, dict):
        return None
    value = memory.get("heapUsed", memory.get("rss"))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


async def fetch_memory_mb(
    client: httpx.AsyncClient,
    target: Target,
    metrics_path: str = "/api/performance/metrics",
    timeout_s: float = 5.0,
) -> Optional[float]:
    """Self-reported heap usage of a target in MB, or None if unavailable.

    Raises httpx.HTTPError on transport failure; callers decide whether
    that matters.
    """
    url = target.url.rstrip("/") + metrics_path
    resp = await client.get(url, timeout=timeout_s, headers={"Accept": "application/json"})
    if resp.status_code != 200:
        return None
    try:
        body = resp.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return _memory_from(body)
