import json

import pytest

from harness.server import HarnessServer
from scripts.compare_runtimes import ComparisonRunner, build_parser, parse_scenario_list


def test_parse_scenario_list():
    assert parse_scenario_list("light, spike") == ["light", "spike"]
    with pytest.raises(ValueError):
        parse_scenario_list(" , ")
    with pytest.raises(ValueError):
        parse_scenario_list("light,gigantic")


@pytest.mark.asyncio
async def test_runner_writes_artifacts(fast_settings, transport, tmp_path):
    args = build_parser().parse_args(
        [
            "--target-a-url", "http://node.test",
            "--target-b-url", "http://bun.test",
            "--scenarios", "light",
            "--users", "2",
            "--duration", "1",
            "--ramp-up", "0",
            "--output-dir", str(tmp_path),
            "--no-external",
        ]
    )
    runner = ComparisonRunner(args, settings=fast_settings)
    assert runner.scenarios[0].users == 2

    await runner.run(HarnessServer(runner.settings, transport=transport))

    summary = json.loads((runner.run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["targets"] == {"node": "http://node.test", "bun": "http://bun.test"}
    assert summary["sessions"][0]["status"] == "completed"
    assert sum(summary["wins"].values()) == 1

    rows = (runner.run_dir / "light.csv").read_text(encoding="utf-8").splitlines()
    assert rows[0].startswith("scenario,target,url")
    assert len(rows) == 3
