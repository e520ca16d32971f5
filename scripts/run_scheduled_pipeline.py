from __future__ import annotations

"""Run the daily harvest from a scheduler in one entrypoint.

TWSE closes at 13:30 and publishes the day's prices afterwards, so the
daily trigger only fires on weekdays once ``--not-before`` (default 15:30
Asia/Taipei) has passed. Typical usage with cron:
    30 15 * * 1-5  cd /srv/stock-harvest && python scripts/run_scheduled_pipeline.py
"""

import argparse
import subprocess  # nosec B404
import sys
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import List, Optional

TAIPEI_TZ = timezone(timedelta(hours=8))
REPO_ROOT = Path(__file__).resolve().parents[1]


@dataclass
class RunSpec:
    run_date: str
    reason: str


def _parse_run_date(raw: Optional[str], now: datetime) -> date:
    if raw:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    return now.date()


def _parse_clock(raw: str) -> time:
    try:
        return datetime.strptime(raw, "%H:%M").time()
    except ValueError as exc:
        raise SystemExit(f"Invalid --not-before={raw!r}. Expected HH:MM.") from exc


def _build_run_specs(
    *, run_date: date, now: datetime, not_before: time, force: bool
) -> List[RunSpec]:
    if force:
        return [RunSpec(run_date=run_date.isoformat(), reason="forced")]
    if run_date.weekday() >= 5:
        return []
    if run_date == now.date() and now.time() < not_before:
        return []
    return [RunSpec(run_date=run_date.isoformat(), reason="weekday")]


def _build_cmd(
    *,
    run_spec: RunSpec,
    config: Optional[str],
    securities: Optional[str],
    max_in_flight: Optional[int],
    dry_run: bool,
) -> List[str]:
    cmd = [sys.executable, "Main.py", "--run-date", run_spec.run_date]
    if config:
        cmd.extend(["--config", config])
    if securities:
        cmd.extend(["--securities", securities])
    if max_in_flight is not None:
        cmd.extend(["--max-in-flight", str(max_in_flight)])
    if dry_run:
        cmd.append("--dry-run")
    return cmd


def main(argv: Optional[List[str]] = None, now: Optional[datetime] = None) -> int:
    parser = argparse.ArgumentParser(description="Weekday trigger for Main.py")
    parser.add_argument("--run-date", default=None, help="YYYY-MM-DD; default is today (Asia/Taipei).")
    parser.add_argument(
        "--not-before",
        default="15:30",
        help="HH:MM Asia/Taipei; today's run is skipped before this time.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even on weekends or before --not-before.",
    )
    parser.add_argument("--config", default=None)
    parser.add_argument("--securities", default=None)
    parser.add_argument("--max-in-flight", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument(
        "--plan-only",
        action="store_true",
        help="Print would-run commands without executing.",
    )
    args = parser.parse_args(argv)

    now = now or datetime.now(TAIPEI_TZ)
    run_date = _parse_run_date(args.run_date, now)
    specs = _build_run_specs(
        run_date=run_date,
        now=now,
        not_before=_parse_clock(args.not_before),
        force=args.force,
    )
    if not specs:
        print(f"No harvest scheduled for run_date={run_date.isoformat()}")
        return 0

    for spec in specs:
        cmd = _build_cmd(
            run_spec=spec,
            config=args.config,
            securities=args.securities,
            max_in_flight=args.max_in_flight,
            dry_run=args.dry_run,
        )
        print(f"[scheduled] reason={spec.reason} run_date={spec.run_date}")
        print("[cmd] " + " ".join(cmd))
        if args.plan_only:
            continue
        subprocess.run(cmd, check=True, cwd=REPO_ROOT)  # nosec B603
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
