import importlib.util
import os
import subprocess
import sys
from datetime import datetime, time, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))
SCRIPT = os.path.join(ROOT, "scripts", "run_scheduled_pipeline.py")
TAIPEI = timezone(timedelta(hours=8))


def _load_script():
    spec = importlib.util.spec_from_file_location("run_scheduled_pipeline", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    return module


def _plan(*args):
    return subprocess.run(
        [sys.executable, SCRIPT, "--plan-only", *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
        timeout=60,
    )


def test_weekend_is_skipped_smoke():
    res = _plan("--run-date", "2024-01-06")
    assert res.returncode == 0, res.stderr
    assert "No harvest scheduled for run_date=2024-01-06" in res.stdout
    assert "[cmd]" not in res.stdout


def test_weekday_plan_passes_options_through_smoke():
    res = _plan("--run-date", "2024-01-05", "--securities", "2330,2317", "--dry-run")
    assert res.returncode == 0, res.stderr
    assert "[scheduled] reason=weekday run_date=2024-01-05" in res.stdout
    assert "Main.py --run-date 2024-01-05 --securities 2330,2317 --dry-run" in res.stdout


def test_today_waits_for_market_close():
    mod = _load_script()
    friday = datetime(2024, 1, 5, tzinfo=TAIPEI).date()
    before_close = datetime(2024, 1, 5, 14, 0, tzinfo=TAIPEI)
    after_close = datetime(2024, 1, 5, 16, 0, tzinfo=TAIPEI)

    assert mod._build_run_specs(
        run_date=friday, now=before_close, not_before=time(15, 30), force=False
    ) == []
    (spec,) = mod._build_run_specs(
        run_date=friday, now=after_close, not_before=time(15, 30), force=False
    )
    assert spec.run_date == "2024-01-05"


def test_force_runs_on_weekend(capsys):
    mod = _load_script()
    saturday_noon = datetime(2024, 1, 6, 12, 0, tzinfo=TAIPEI)
    assert mod.main(["--force", "--plan-only"], now=saturday_noon) == 0
    out = capsys.readouterr().out
    assert "[scheduled] reason=forced run_date=2024-01-06" in out
