from __future__ import annotations

from typing import Any, Dict, List, Set, Tuple

from stock_harvest.domain import INSTITUTIONAL_FIELDS, VALUATION_FIELDS, DailySnapshot


def _missing_all(snapshot: DailySnapshot, names) -> bool:
    return all(getattr(snapshot, name) is None for name in names)


def run_quality_checks(snapshots: List[DailySnapshot]) -> Dict[str, Any]:
    """
    Quality summary for the snapshots harvested in one run.

    Keys:
      - row_count
      - duplicates          (same (security_code, date) seen twice)
      - missing_ohlc        (open/high/low not all reported)
      - missing_valuation   (no valuation value at all)
      - missing_institutional
      - negative_counts     (volume/turnover/transactions below zero)

    Duplicates are counted on (security_code, date), which maps one-to-one
    onto the uniq_stock_price_day key once the security is persisted.
    """
    row_count = len(snapshots)
    missing_ohlc = sum(1 for s in snapshots if None in (s.open, s.high, s.low))
    missing_valuation = sum(1 for s in snapshots if _missing_all(s, VALUATION_FIELDS))
    missing_institutional = sum(1 for s in snapshots if _missing_all(s, INSTITUTIONAL_FIELDS))
    negative_counts = sum(
        1 for s in snapshots if min(s.volume, s.turnover, s.transactions) < 0
    )

    seen: Set[Tuple[str, Any]] = set()
    duplicates = 0
    for s in snapshots:
        key = (s.security_code, s.date)
        if key in seen:
            duplicates += 1
        else:
            seen.add(key)

    passed = duplicates == 0 and negative_counts == 0

    return {
        "row_count": row_count,
        "duplicates": duplicates,
        "missing_ohlc": missing_ohlc,
        "missing_valuation": missing_valuation,
        "missing_institutional": missing_institutional,
        "negative_counts": negative_counts,
        "passed": passed,
    }
