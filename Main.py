import json
import logging
import os
import time
import traceback
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from stock_harvest.config import (
    apply_env_defaults_from_config,
    load_dotenv,
    load_yaml,
    resolve_max_in_flight,
    resolve_securities,
)
from stock_harvest.domain import Security
from stock_harvest.input.fetch import HttpSettings
from stock_harvest.input.sources import SourceDescriptor, load_source_descriptors
from stock_harvest.utils.args_parser import build_parser

logger = logging.getLogger(__name__)


@dataclass
class RunLog:
    run_id: str
    start_time_utc: str
    end_time_utc: str
    run_date: str
    securities: str
    max_in_flight: int
    dry_run: bool
    persisted: int
    failed: int
    inserted: int
    updated: int
    unchanged: int
    status: str
    error: str = ""
    notes: str = ""


@dataclass
class RunContext:
    base_dir: str
    args: Any
    cfg: Dict[str, Any]
    log_cfg: Dict[str, Any]
    securities: List[Security]
    max_in_flight: int
    http_settings: HttpSettings
    sources: Dict[str, SourceDescriptor]
    run_id: str
    start_time_utc: str


@dataclass
class PipelineState:
    status: str = "success"
    err: str = ""
    notes: str = ""
    error_traceback: str = ""
    totals: Optional[Dict[str, int]] = None
    quality_report: Optional[Dict[str, Any]] = None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_jsonl(path: str, record: Dict[str, Any]) -> None:
    ensure_dir(os.path.dirname(path) or ".")
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def _configure_logging(log_cfg: Dict[str, Any]) -> None:
    level = str(os.getenv("HARVEST_LOG_LEVEL") or log_cfg.get("level") or "INFO").upper()
    fmt = str(log_cfg.get("format") or "%(asctime)s %(levelname)s %(name)s %(message)s")

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(getattr(logging, level, logging.INFO))
        return
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=fmt,
    )


def _append_note(notes: str, item: str) -> str:
    item = str(item).strip()
    if not item:
        return notes
    return item if not notes else f"{notes}; {item}"


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def resolve_paths(base_dir: str, config_path: str) -> str:
    if os.path.isabs(config_path):
        return config_path
    return os.path.join(base_dir, config_path)


def resolve_runtime(base_dir: str, args: Any) -> Optional[RunContext]:
    load_dotenv(os.path.join(base_dir, ".env"))
    cfg = load_yaml(resolve_paths(base_dir, args.config))
    apply_env_defaults_from_config(cfg)

    pipeline_cfg = cfg.get("pipeline") or {}
    log_cfg = cfg.get("logging") or {}
    _configure_logging(log_cfg)

    try:
        securities = resolve_securities(args.securities, cfg)
    except ValueError as exc:
        logger.error("config_error field=securities message=%s", str(exc))
        return None
    try:
        max_in_flight = resolve_max_in_flight(args.max_in_flight, pipeline_cfg)
    except ValueError as exc:
        logger.error("config_error field=max_in_flight message=%s", str(exc))
        return None
    try:
        http_settings = HttpSettings.from_config(cfg)
    except ValueError as exc:
        logger.error("config_error field=http message=%s", str(exc))
        return None
    try:
        sources = load_source_descriptors(cfg)
    except ValueError as exc:
        logger.error("config_error field=sources message=%s", str(exc))
        return None

    logger.info(
        "config_resolved securities=%s max_in_flight=%s timeout_s=%s max_retries=%s",
        ",".join(s.code for s in securities),
        max_in_flight,
        http_settings.timeout_seconds,
        http_settings.max_retries,
    )
    return RunContext(
        base_dir=base_dir,
        args=args,
        cfg=cfg,
        log_cfg=log_cfg,
        securities=securities,
        max_in_flight=max_in_flight,
        http_settings=http_settings,
        sources=sources,
        run_id=str(uuid.uuid4()),
        start_time_utc=utc_now_iso(),
    )


def build_stores(dry_run: bool):
    """Return ``(security_store, snapshot_store)`` for the run."""
    if dry_run:
        from stock_harvest.db.memory import InMemorySecurityStore, InMemorySnapshotStore

        securities = InMemorySecurityStore()
        return securities, InMemorySnapshotStore(securities)

    from stock_harvest.db import get_db_engine
    from stock_harvest.db.stores import SqlSecurityStore, SqlSnapshotStore
    from stock_harvest.output.load import UpsertGateway

    engine = get_db_engine()
    gateway = UpsertGateway(engine)
    return SqlSecurityStore(engine, gateway), SqlSnapshotStore(engine, gateway)


def run_pipeline_stage(ctx: RunContext, state: PipelineState) -> None:
    try:
        from stock_harvest.input.fetch import HttpFetcher
        from stock_harvest.input.harvest import Harvester
        from stock_harvest.output import run_quality_checks
        from stock_harvest.pipeline import PipelineCoordinator

        t0 = time.monotonic()
        security_store, snapshot_store = build_stores(ctx.args.dry_run)
        harvester = Harvester(
            fetcher=HttpFetcher(ctx.http_settings),
            sources=ctx.sources,
            run_date=ctx.args.run_date,
        )
        coordinator = PipelineCoordinator(
            harvester,
            security_store,
            snapshot_store,
            max_in_flight=ctx.max_in_flight,
            run_id=ctx.run_id,
        )
        report = coordinator.run(ctx.securities)
        state.totals = report.totals()
        logger.info(
            "stage_ok run_id=%s stage=harvest totals=%s elapsed_ms=%s",
            ctx.run_id,
            json.dumps(state.totals, sort_keys=True),
            int((time.monotonic() - t0) * 1000),
        )
        for outcome in report.outcomes:
            if outcome.state.value != "persisted" or outcome.issues:
                state.notes = _append_note(
                    state.notes, json.dumps(outcome.summary(), ensure_ascii=False, sort_keys=True)
                )

        state.quality_report = run_quality_checks(report.records())
        logger.info(
            "stage_ok run_id=%s stage=quality report=%s",
            ctx.run_id,
            json.dumps(state.quality_report, sort_keys=True),
        )

        report.raise_for_status()
        print(
            f"[run_id={ctx.run_id}] persisted={state.totals['persisted']}/"
            f"{state.totals['securities']} inserted={state.totals['inserted']} "
            f"updated={state.totals['updated']} unchanged={state.totals['unchanged']}"
        )
    except Exception as e:
        state.status = "failed"
        state.err = f"pipeline_error: {repr(e)}"
        state.error_traceback = traceback.format_exc()
        logger.error("run_failed run_id=%s error=%s", ctx.run_id, state.err)
        logger.debug("run_failed_traceback run_id=%s\n%s", ctx.run_id, state.error_traceback)


def finalize_runlog(ctx: RunContext, state: PipelineState) -> int:
    run_log_path = ctx.log_cfg.get("run_log_path", "logs/pipeline_runs.jsonl")
    if not os.path.isabs(run_log_path):
        run_log_path = os.path.join(ctx.base_dir, run_log_path)

    totals = state.totals or {}
    record = RunLog(
        run_id=ctx.run_id,
        start_time_utc=ctx.start_time_utc,
        end_time_utc=utc_now_iso(),
        run_date=ctx.args.run_date,
        securities=",".join(s.code for s in ctx.securities),
        max_in_flight=ctx.max_in_flight,
        dry_run=bool(ctx.args.dry_run),
        persisted=int(totals.get("persisted", 0)),
        failed=int(totals.get("failed", 0)),
        inserted=int(totals.get("inserted", 0)),
        updated=int(totals.get("updated", 0)),
        unchanged=int(totals.get("unchanged", 0)),
        status=state.status,
        error=state.err,
        notes=state.notes,
    )
    write_jsonl(run_log_path, asdict(record))

    logger.info("run_log_written run_id=%s path=%s", ctx.run_id, run_log_path)
    print(f"[run_id={ctx.run_id}] run_log_written_to={run_log_path}")

    return 0 if state.status == "success" else 1


def main(argv: Optional[List[str]] = None) -> int:
    base_dir = os.path.dirname(os.path.abspath(__file__))
    args = parse_args(argv)
    ctx = resolve_runtime(base_dir, args)
    if ctx is None:
        return 1

    state = PipelineState()
    run_pipeline_stage(ctx, state)
    return finalize_runlog(ctx, state)


if __name__ == "__main__":
    raise SystemExit(main())
