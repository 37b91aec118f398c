import argparse
import asyncio
import csv
import dataclasses
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from harness.config import Settings, settings as default_settings
from harness.errors import HarnessError
from harness.models import RunSession, RunStatus, Target
from harness.scenarios import PRESETS, get_preset, override
from harness.server import HarnessServer

logger = logging.getLogger("harness.cli")


def now_iso() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def parse_scenario_list(raw: str) -> List[str]:
    out = [token.strip() for token in raw.split(",") if token.strip()]
    if not out:
        raise ValueError("No scenarios provided")
    for name in out:
        if name not in PRESETS:
            raise ValueError(f"Unknown scenario {name!r}; expected one of {sorted(PRESETS)}")
    return out


def result_rows(session: RunSession) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for t in session.targets:
        res = session.results.get(t.name)
        if res is None:
            continue
        rows.append(
            {
                "scenario": session.scenario.name,
                "target": t.name,
                "url": t.url,
                "provenance": res.provenance,
                "total_requests": res.total_requests,
                "success_count": res.success_count,
                "error_count": res.error_count,
                "success_rate": round(res.success_rate, 3),
                "rps": round(res.requests_per_second, 3),
                "avg_ms": round(res.avg_latency_ms, 3),
                "min_ms": round(res.min_latency_ms, 3),
                "max_ms": round(res.max_latency_ms, 3),
                "p50_ms": round(res.p50_latency_ms, 3),
                "p95_ms": round(res.p95_latency_ms, 3),
                "p99_ms": round(res.p99_latency_ms, 3),
                "peak_memory_mb": round(res.peak_memory_mb, 3),
                "avg_memory_mb": round(res.avg_memory_mb, 3),
                "duration_s": round(res.duration_seconds, 3),
            }
        )
    return rows


def write_csv(path: Path, rows: List[Dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return

    fieldnames: List[str] = []
    seen = set()
    for row in rows:
        for k in row.keys():
            if k not in seen:
                seen.add(k)
                fieldnames.append(k)

    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def print_session(session: RunSession) -> None:
    print(f"\n== {session.scenario.name}: {session.status.value}")
    if session.error:
        print(f"  error: {session.error}")
    for row in result_rows(session):
        print(
            f"  {row['target']:<10} {row['rps']:>10.1f} rps  avg {row['avg_ms']:>8.2f} ms  "
            f"p95 {row['p95_ms']:>8.2f} ms  success {row['success_rate']:>6.2f}%  "
            f"peak {row['peak_memory_mb']:>7.1f} MB  [{row['provenance']}]"
        )
    cmp_ = session.comparison
    if cmp_ is not None:
        if cmp_.is_tie:
            print(f"  result: tie ({cmp_.score_a:.2f} vs {cmp_.score_b:.2f})")
        else:
            print(f"  winner: {cmp_.winner} by {cmp_.improvement_pct:.2f}% ({cmp_.score_a:.2f} vs {cmp_.score_b:.2f})")


class ComparisonRunner:
    def __init__(self, args: argparse.Namespace, settings: Optional[Settings] = None) -> None:
        self.args = args
        base = settings or default_settings
        self.settings = dataclasses.replace(
            base,
            use_external_tool=base.use_external_tool if args.external is None else args.external,
            scoring_profile=args.scoring_profile or base.scoring_profile,
        )
        self.target_a = Target(args.target_a_name or self.settings.target_a_name, args.target_a_url or self.settings.target_a_url)
        self.target_b = Target(args.target_b_name or self.settings.target_b_name, args.target_b_url or self.settings.target_b_url)
        self.scenarios = [
            override(
                get_preset(name),
                users=args.users,
                duration_seconds=args.duration,
                ramp_up_seconds=args.ramp_up,
            )
            for name in parse_scenario_list(args.scenarios)
        ]
        self.sessions: List[RunSession] = []

        timestamp = datetime.utcnow().strftime("%Y%m%d_%H%M%S")
        self.run_dir = Path(args.output_dir) / f"comparison_{timestamp}"

    async def run(self, server: Optional[HarnessServer] = None) -> None:
        server = server or HarnessServer(self.settings)
        await server.start()
        try:
            for scenario in self.scenarios:
                session = server.create_session(self.target_a, self.target_b, scenario)
                logger.info("Running scenario %s (%s)", scenario.name, session.id)
                await server.run_session(session)
                self.sessions.append(session)
                print_session(session)
        finally:
            await server.shutdown()
        self._write_artifacts()

    def _build_summary(self) -> Dict[str, Any]:
        completed = [s for s in self.sessions if s.status is RunStatus.COMPLETED]
        wins: Dict[str, int] = {self.target_a.name: 0, self.target_b.name: 0, "tie": 0}
        for s in completed:
            wins[s.comparison.winner] = wins.get(s.comparison.winner, 0) + 1
        return {
            "generatedAt": now_iso(),
            "targets": {t.name: t.url for t in (self.target_a, self.target_b)},
            "scoringProfile": self.settings.scoring_profile,
            "externalTool": self.settings.use_external_tool,
            "wins": wins,
            "sessions": [s.to_dict() for s in self.sessions],
        }

    def _write_artifacts(self) -> None:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        for session in self.sessions:
            write_csv(self.run_dir / f"{session.scenario.name}.csv", result_rows(session))
        with (self.run_dir / "summary.json").open("w", encoding="utf-8") as f:
            json.dump(self._build_summary(), f, indent=2, default=str)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Compare two HTTP services under identical load")

    ap.add_argument("--target-a-url", default=None, help="defaults to NODE_SERVICE_URL")
    ap.add_argument("--target-b-url", default=None, help="defaults to BUN_SERVICE_URL")
    ap.add_argument("--target-a-name", default=None)
    ap.add_argument("--target-b-name", default=None)

    ap.add_argument("--scenarios", default="light", help="comma separated preset names")
    ap.add_argument("--users", type=int, default=None)
    ap.add_argument("--duration", type=int, default=None, help="seconds")
    ap.add_argument("--ramp-up", type=int, default=None, help="seconds")

    ap.add_argument("--output-dir", default="results")
    ap.add_argument("--external", action=argparse.BooleanOptionalAction, default=None)
    ap.add_argument("--scoring-profile", default=None)
    ap.add_argument("--log-level", default="INFO")

    return ap


async def async_main(args: argparse.Namespace) -> int:
    try:
        runner = ComparisonRunner(args)
    except (HarnessError, ValueError) as e:
        print(f"error: {e}")
        return 2
    await runner.run()

    print(f"\nComparison completed. Artifacts: {runner.run_dir}")
    print(f"  - {runner.run_dir / 'summary.json'}")
    for session in runner.sessions:
        print(f"  - {runner.run_dir / (session.scenario.name + '.csv')}")
    failed = [s for s in runner.sessions if s.status is RunStatus.FAILED]
    return 1 if failed else 0


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return asyncio.run(async_main(args))


if __name__ == "__main__":
    raise SystemExit(main())
