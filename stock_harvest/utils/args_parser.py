from __future__ import annotations

"""Command-line parser utilities."""

import argparse
from datetime import datetime

from stock_harvest.transform.records import TAIPEI_TZ


def valid_date(value: str) -> str:
    """Validate date argument format as ``YYYY-MM-DD``."""
    try:
        dt = datetime.strptime(value, "%Y-%m-%d")
        return dt.date().isoformat()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(
            f"Invalid date '{value}'. Expected format: YYYY-MM-DD."
        ) from exc


def parse_csv_list(value: str) -> list[str]:
    """Parse comma-separated values into a de-duplicated list, order kept."""
    if value is None:
        return []

    out: list[str] = []
    seen = set()
    for item in str(value).split(","):
        token = item.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        out.append(token)
    return out


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"Invalid value {parsed}. Expected >= 1.")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    """Build and return the project CLI parser."""
    parser = argparse.ArgumentParser(
        description="Taiwan equity daily harvest pipeline.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default="config/conf.yaml",
        help="Path to YAML config relative to the project root",
    )
    today_iso = datetime.now(TAIPEI_TZ).date().isoformat()
    parser.add_argument(
        "--run-date",
        required=False,
        default=today_iso,
        type=valid_date,
        help="Run date in YYYY-MM-DD; selects the price-history month (defaults to today, Asia/Taipei).",
    )
    parser.add_argument(
        "--securities",
        type=parse_csv_list,
        default=None,
        help="Comma-separated security codes, e.g. 2330,2317 (default from config).",
    )
    parser.add_argument(
        "--max-in-flight",
        type=positive_int,
        default=None,
        help="Securities harvested concurrently (default from config).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Harvest into in-memory stores instead of PostgreSQL.",
    )
    return parser
