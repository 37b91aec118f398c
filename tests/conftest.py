import asyncio
import dataclasses

import httpx
import pytest

from harness.config import Settings
from harness.models import Endpoint, ScenarioConfig, Target

NODE = Target("node", "http://node.test")
BUN = Target("bun", "http://bun.test")


class StubTargets:
    """Two fake services behind one MockTransport, keyed by host."""

    def __init__(self) -> None:
        self.health_status = {"node.test": 200, "bun.test": 200}
        self.memory_mb = {"node.test": 48.0, "bun.test": 32.0}
        self.delay_s = {"node.test": 0.0, "bun.test": 0.0}
        self.health_delay_s = 0.0
        self.broken = set()
        self.calls = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls += 1
        if host in self.broken:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/api/health":
            if self.health_delay_s:
                await asyncio.sleep(self.health_delay_s)
            status = self.health_status[host]
            return httpx.Response(status, json={"status": "healthy", "runtime": host.split(".")[0], "uptime": 12.5})
        if path == "/api/performance/metrics":
            return httpx.Response(200, json={"current": {"memory": {"heapUsed": self.memory_mb[host], "rss": 90.0}}})
        if path.startswith("/missing"):
            return httpx.Response(404, json={"error": "not found"})
        if self.delay_s.get(host):
            await asyncio.sleep(self.delay_s[host])
        return httpx.Response(200, json={"ok": True, "path": path})


@pytest.fixture
def stubs() -> StubTargets:
    return StubTargets()


@pytest.fixture
def transport(stubs) -> httpx.MockTransport:
    return httpx.MockTransport(stubs)


@pytest.fixture
def fast_settings() -> Settings:
    return dataclasses.replace(
        Settings(),
        target_a_url=NODE.url,
        target_b_url=BUN.url,
        batch_gap_s=0.0,
        per_user_ramp_ms=0,
        backoff_scale=0.05,
        monitor_interval_s=0.2,
        snapshot_interval_s=0.2,
        use_external_tool=False,
        scoring_profile="balanced",
        cleanup_interval_s=3600.0,
    )


def make_scenario(users=2, duration=1, paths=("/api/books",), ramp_up=0, name="test") -> ScenarioConfig:
    return ScenarioConfig(
        name=name,
        users=users,
        duration_seconds=duration,
        ramp_up_seconds=ramp_up,
        endpoints=tuple(Endpoint(path=p) for p in paths),
    )
