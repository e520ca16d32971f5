from __future__ import annotations

"""Fetch orchestrator: per-security listing, price, fundamentals and flow fetches.

The listing fetch runs first; the remaining fetches are independent
reads issued concurrently and joined before rows are merged by trading date.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from stock_harvest.domain import DailySnapshot, Security
from stock_harvest.errors import (
    DecodingError,
    FetchError,
    HarvestError,
    ParseError,
    ValidationError,
)
from stock_harvest.transform.records import (
    build_security,
    build_snapshot,
    parse_trading_date,
    taipei_today,
)

from .decode import decode_bytes
from .document import parse_fields, parse_table
from .fetch import HttpFetcher
from .numeric import extract_decimal, extract_int
from .sources import (
    FUNDAMENTALS,
    INSTITUTIONAL,
    LISTING,
    PRICE_HISTORY,
    SourceDescriptor,
    load_source_descriptors,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
PreviousLookup = Callable[[date], Optional[DailySnapshot]]

_DECIMAL_FIELDS = ("pe_ratio", "pb_ratio", "dividend_yield")
_INT_FIELDS = ("market_cap", "foreign_buy", "trust_buy", "dealer_buy")


@dataclass
class HarvestResult:
    """Output of one security's harvest.

    ``issues`` holds one dict per degraded fetch or rejected row, so the
    coordinator can attach every downgraded error to the security outcome.
    """

    security: Security
    snapshots: List[DailySnapshot] = field(default_factory=list)
    issues: List[Dict[str, str]] = field(default_factory=list)
    degraded_sources: List[str] = field(default_factory=list)

    def add_issue(self, stage: str, error: BaseException, **extra: str) -> None:
        item = {"stage": stage, "error": type(error).__name__, "message": str(error)}
        item.update(extra)
        self.issues.append(item)


def _extract_optional(raw: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in _DECIMAL_FIELDS:
        if name in raw:
            value = extract_decimal(raw[name])
            out[name] = None if value is None else value.quantize(CENT, rounding=ROUND_HALF_UP)
    for name in _INT_FIELDS:
        if name in raw:
            out[name] = extract_int(raw[name], field=name)
    return {k: v for k, v in out.items() if v is not None}


class Harvester:
    """Drive the per-security fetch sequence and build daily snapshots."""

    def __init__(
        self,
        fetcher: Optional[HttpFetcher] = None,
        sources: Optional[Dict[str, SourceDescriptor]] = None,
        run_date: Optional[str] = None,
        as_of: Optional[date] = None,
    ):
        self.fetcher = fetcher or HttpFetcher()
        self.sources = sources or load_source_descriptors()
        self.run_date = run_date or taipei_today().isoformat()
        self.as_of = as_of or taipei_today()

    def _text(self, source: str, code: str) -> str:
        descriptor = self.sources[source]
        raw = self.fetcher.fetch(descriptor, code, self.run_date)
        return decode_bytes(raw, descriptor.encoding)

    def fetch_identity(self, security: Security) -> Security:
        """Refresh the display name from the listing source."""
        descriptor = self.sources[LISTING]
        rows = parse_table(
            self._text(LISTING, security.code),
            descriptor.locators,
            table_selector=descriptor.table_selector,
            source=LISTING,
        )
        for row in rows:
            if row.get("code", "").strip() == security.code and row.get("name"):
                return build_security(security.code, row["name"])
        raise ParseError(f"listing has no row for code={security.code}")

    def fetch_price_rows(self, code: str) -> List[Dict[str, str]]:
        descriptor = self.sources[PRICE_HISTORY]
        return parse_table(
            self._text(PRICE_HISTORY, code),
            descriptor.locators,
            table_selector=descriptor.table_selector,
            source=PRICE_HISTORY,
        )

    def fetch_fundamentals(self, code: str) -> Dict[str, Any]:
        descriptor = self.sources[FUNDAMENTALS]
        text = self._text(FUNDAMENTALS, code)
        if descriptor.mode == "table":
            rows = parse_table(text, descriptor.locators, descriptor.table_selector, FUNDAMENTALS)
            raw = rows[0] if rows else {}
        else:
            raw = parse_fields(text, descriptor.locators, source=FUNDAMENTALS)
        return _extract_optional(raw)

    def fetch_institutional(self, code: str) -> Dict[date, Dict[str, Any]]:
        descriptor = self.sources[INSTITUTIONAL]
        rows = parse_table(
            self._text(INSTITUTIONAL, code),
            descriptor.locators,
            table_selector=descriptor.table_selector,
            source=INSTITUTIONAL,
        )
        out: Dict[date, Dict[str, Any]] = {}
        for row in rows:
            try:
                day = parse_trading_date(row.get("date", ""))
                out[day] = _extract_optional(row)
            except ParseError as exc:
                logger.debug("institutional_row_skipped code=%s reason=%s", code, exc)
        return out

    def covers_crawl_month(self) -> bool:
        """True when the harvested month is the month of the crawl date."""
        run_day = date.fromisoformat(self.run_date)
        return (run_day.year, run_day.month) == (self.as_of.year, self.as_of.month)

    @staticmethod
    def _optional_fetch(
        fn: Callable[[str], Any], code: str
    ) -> Tuple[Any, Optional[HarvestError]]:
        try:
            return fn(code), None
        except (FetchError, DecodingError, ParseError) as exc:
            return None, exc

    def harvest(
        self, security: Security, previous_lookup: Optional[PreviousLookup] = None
    ) -> HarvestResult:
        """Harvest one security.

        Raises
        ------
        FetchError, DecodingError, ParseError
            When the price-history source fails: without it no snapshot can
            be built for the security.
        """
        result = HarvestResult(security=security)
        code = security.code

        try:
            refreshed = self.fetch_identity(security)
            result.security = replace(refreshed, id=security.id)
        except HarvestError as exc:
            logger.warning("listing_degraded code=%s error=%s; keeping configured name", code, exc)
            result.degraded_sources.append(LISTING)
            result.add_issue(LISTING, exc)

        current_month = self.covers_crawl_month()
        if not current_month:
            # The fundamentals page only describes the crawl date.
            logger.info(
                "fundamentals_skipped code=%s run_date=%s as_of=%s",
                code,
                self.run_date,
                self.as_of,
            )
            result.issues.append(
                {
                    "stage": FUNDAMENTALS,
                    "error": "skipped",
                    "message": f"run_date={self.run_date} is outside the crawl month",
                }
            )

        with ThreadPoolExecutor(max_workers=3, thread_name_prefix=f"harvest-{code}") as pool:
            price_future = pool.submit(self.fetch_price_rows, code)
            optional_futures = {}
            if current_month:
                optional_futures[FUNDAMENTALS] = pool.submit(
                    self._optional_fetch, self.fetch_fundamentals, code
                )
            optional_futures[INSTITUTIONAL] = pool.submit(
                self._optional_fetch, self.fetch_institutional, code
            )
            # Barrier: every fetch completes (or is marked absent) before merging.
            optional: Dict[str, Any] = {}
            for source, future in optional_futures.items():
                value, error = future.result()
                if error is not None:
                    logger.warning(
                        "source_degraded code=%s source=%s error=%s", code, source, error
                    )
                    result.degraded_sources.append(source)
                    result.add_issue(source, error)
                optional[source] = value or {}
            optional.setdefault(FUNDAMENTALS, {})
            price_rows = price_future.result()

        self._merge(
            result,
            price_rows,
            optional[FUNDAMENTALS],
            optional[INSTITUTIONAL],
            previous_lookup,
        )
        logger.info(
            "harvest_done code=%s snapshots=%s degraded=%s issues=%s",
            code,
            len(result.snapshots),
            ",".join(result.degraded_sources) or "-",
            len(result.issues),
        )
        return result

    def _merge(
        self,
        result: HarvestResult,
        price_rows: List[Dict[str, str]],
        fundamentals: Dict[str, Any],
        flows: Dict[date, Dict[str, Any]],
        previous_lookup: Optional[PreviousLookup],
    ) -> None:
        dated: Dict[date, Dict[str, str]] = {}
        for row in price_rows:
            try:
                day = parse_trading_date(row.get("date", ""))
            except ParseError as exc:
                result.add_issue("parse", exc, row=row.get("date", ""))
                continue
            dated[day] = row

        if not dated:
            return

        days = sorted(dated)
        latest = days[-1]
        previous = previous_lookup(days[0]) if previous_lookup else None

        for day in days:
            optional: Dict[str, Any] = dict(flows.get(day) or {})
            if day == latest:
                optional.update(fundamentals)
            try:
                snapshot = build_snapshot(
                    result.security,
                    day,
                    dated[day],
                    previous=previous,
                    as_of=self.as_of,
                    optional_values=optional,
                )
            except (ParseError, ValidationError) as exc:
                logger.warning(
                    "record_rejected code=%s date=%s error=%r", result.security.code, day, exc
                )
                result.add_issue("build", exc, date=day.isoformat())
                continue
            result.snapshots.append(snapshot)
            previous = snapshot
