from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .errors import ScenarioError
from .models import Endpoint, ScenarioConfig


def _eps(*paths: str) -> tuple:
    return tuple(Endpoint(path=p) for p in paths)


PRESETS: Dict[str, ScenarioConfig] = {
    "light": ScenarioConfig(
        name="light",
        description="Light Load",
        users=10,
        duration_seconds=60,
        ramp_up_seconds=5,
        endpoints=_eps("/api/health", "/api/books", "/api/authors"),
    ),
    "medium": ScenarioConfig(
        name="medium",
        description="Medium Load",
        users=50,
        duration_seconds=120,
        ramp_up_seconds=10,
        endpoints=_eps("/api/books", "/api/authors", "/api/search?q=test", "/api/books/1"),
    ),
    "heavy": ScenarioConfig(
        name="heavy",
        description="Heavy Load",
        users=100,
        duration_seconds=180,
        ramp_up_seconds=15,
        endpoints=_eps(
            "/api/books",
            "/api/authors",
            "/api/search?q=test",
            "/api/books/1",
            "/api/authors/1",
            "/api/orders",
        ),
    ),
    "spike": ScenarioConfig(
        name="spike",
        description="Short burst of high concurrency",
        users=200,
        duration_seconds=30,
        ramp_up_seconds=1,
        endpoints=(
            Endpoint("/api/books", 30),
            Endpoint("/api/authors", 20),
            Endpoint("/api/search?q=fiction", 25),
            Endpoint("/api/books/1", 15),
            Endpoint("/api/performance/metrics", 10),
        ),
    ),
    "sustained": ScenarioConfig(
        name="sustained",
        description="Moderate load held for five minutes",
        users=30,
        duration_seconds=300,
        ramp_up_seconds=10,
        endpoints=(
            Endpoint("/api/books", 30),
            Endpoint("/api/authors", 20),
            Endpoint("/api/search?q=fiction", 25),
            Endpoint("/api/books/1", 15),
            Endpoint("/api/performance/metrics", 10),
        ),
    ),
    "extreme": ScenarioConfig(
        name="extreme",
        description="Extreme Load",
        users=200,
        duration_seconds=300,
        ramp_up_seconds=20,
        endpoints=_eps(
            "/api/books?page=1&limit=50",
            "/api/search?q=fiction&genre=mystery",
            "/api/authors",
            "/api/books/1",
            "/api/performance/metrics",
        ),
    ),
    "massive": ScenarioConfig(
        name="massive",
        description="Massive Load (2000 users)",
        users=2000,
        duration_seconds=600,
        ramp_up_seconds=60,
        endpoints=_eps(
            "/api/books",
            "/api/authors",
            "/api/search?q=bestseller",
            "/api/books/1",
            "/api/orders",
        ),
    ),
}

_MIXED = (
    Endpoint("/api/books", 30),
    Endpoint("/api/authors", 20),
    Endpoint("/api/search?q=fiction", 25),
    Endpoint("/api/books/1", 15),
    Endpoint("/api/performance/metrics", 10),
)

# POST endpoints that make the target allocate
MEMORY_STRESS_ENDPOINTS = (
    Endpoint(
        "/api/system/stress-test", 40, "POST", {"duration": 5000, "intensity": 5, "memoryIntensive": True}
    ),
    Endpoint("/api/system/heap-dump", 30, "POST", {}),
    Endpoint(
        "/api/system/memory-stress", 30, "POST", {"objectCount": 5000, "objectSize": 500, "duration": 10000}
    ),
)


def _memory_preset(name: str, users: int, duration_seconds: int, description: str) -> ScenarioConfig:
    return ScenarioConfig(
        name=name,
        description=description,
        users=users,
        duration_seconds=duration_seconds,
        ramp_up_seconds=10,
        endpoints=_MIXED + MEMORY_STRESS_ENDPOINTS,
    )


PRESETS.update(
    (name, _memory_preset(name, users, duration, description))
    for name, users, duration, description in (
        ("memory_light", 500, 30, "Memory-intensive operations"),
        ("memory_medium", 1000, 60, "Memory-intensive operations"),
        ("memory_heavy", 1500, 90, "Memory-intensive operations"),
        ("memory_extreme", 2500, 60, "Memory-intensive operations"),
        ("memory_stress_light", 100, 30, "Advanced memory stress test"),
        ("memory_stress_medium", 500, 60, "Advanced memory stress test"),
        ("memory_stress_heavy", 1000, 90, "Advanced memory stress test"),
        ("memory_stress_extreme", 2000, 60, "Advanced memory stress test"),
    )
)


def get_preset(name: str) -> ScenarioConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise ScenarioError(f"Unknown scenario: {name!r}") from None


def _positive_int(raw: Mapping[str, Any], key: str, default: Optional[int], minimum: int) -> int:
    value = raw.get(key, default)
    if value is None:
        raise ScenarioError(f"{key} is required")
    if isinstance(value, bool):
        raise ScenarioError(f"{key} must be an integer")
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ScenarioError(f"{key} must be an integer") from None
    if value < minimum:
        raise ScenarioError(f"{key} must be >= {minimum}, got {value}")
    return value


def parse_endpoint(raw: Any) -> Endpoint:
    if isinstance(raw, str):
        raw = {"path": raw}
    if not isinstance(raw, Mapping):
        raise ScenarioError(f"Invalid endpoint entry: {raw!r}")

    path = raw.get("path")
    if not isinstance(path, str) or not path.startswith("/"):
        raise ScenarioError(f"Endpoint path must start with '/': {path!r}")
    try:
        weight = float(raw.get("weight", 1))
    except (TypeError, ValueError):
        raise ScenarioError(f"Endpoint weight must be a number: {path}") from None
    if weight <= 0:
        raise ScenarioError(f"Endpoint weight must be > 0: {path}")

    method = str(raw.get("method", "GET")).upper()
    if method not in ("GET", "POST"):
        raise ScenarioError(f"Unsupported method {method} for {path}")
    body = raw.get("body")
    if body is not None and not isinstance(body, dict):
        raise ScenarioError(f"Endpoint body must be an object: {path}")
    return Endpoint(path=path, weight=weight, method=method, body=body)


def parse_custom(raw: Any) -> ScenarioConfig:
    if not isinstance(raw, Mapping):
        raise ScenarioError("customScenario must be an object")

    users = _positive_int(raw, "users", None, 1)
    duration = _positive_int(raw, "durationSeconds", raw.get("duration"), 1)
    ramp_up = _positive_int(raw, "rampUpSeconds", raw.get("rampUp", 0), 0)

    endpoints_raw = raw.get("endpoints")
    if not isinstance(endpoints_raw, list) or not endpoints_raw:
        raise ScenarioError("endpoints must be a non-empty list")
    endpoints = tuple(parse_endpoint(e) for e in endpoints_raw)

    return ScenarioConfig(
        name=str(raw.get("name") or "custom"),
        description=str(raw.get("description") or ""),
        users=users,
        duration_seconds=duration,
        ramp_up_seconds=ramp_up,
        endpoints=endpoints,
    )


def resolve(scenario_name: Optional[str], custom: Optional[Any]) -> ScenarioConfig:
    """A custom scenario wins over a preset name, matching the start API."""
    if custom is not None:
        return parse_custom(custom)
    if scenario_name:
        return get_preset(scenario_name)
    raise ScenarioError("scenarioName or customScenario is required")


def override(
    base: ScenarioConfig,
    *,
    users: Optional[int] = None,
    duration_seconds: Optional[int] = None,
    ramp_up_seconds: Optional[int] = None,
) -> ScenarioConfig:
    raw = base.to_dict()
    if users is not None:
        raw["users"] = users
    if duration_seconds is not None:
        raw["durationSeconds"] = duration_seconds
    if ramp_up_seconds is not None:
        raw["rampUpSeconds"] = ramp_up_seconds
    return parse_custom(raw)
