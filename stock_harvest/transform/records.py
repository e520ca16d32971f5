from __future__ import annotations

"""Assemble parsed field fragments into validated domain records."""

import re
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional, Tuple

from stock_harvest.domain import DailySnapshot, Security
from stock_harvest.errors import (
    InconsistentOHLCError,
    MalformedFieldError,
    MissingMandatoryFieldError,
    ValidationError,
)
from stock_harvest.input.numeric import extract_decimal, extract_int, is_not_reported

TAIPEI_TZ = timezone(timedelta(hours=8))
CENT = Decimal("0.01")
ROC_YEAR_OFFSET = 1911

_CODE_RE = re.compile(r"^\d{4,6}$")
_DATE_RE = re.compile(r"^'?(\d{2,4})[/\-.](\d{1,2})[/\-.](\d{1,2})$")
_WS_RE = re.compile(r"\s+")


def taipei_today() -> date:
    return datetime.now(TAIPEI_TZ).date()


def parse_trading_date(text: str) -> date:
    """Parse ROC (``113/01/02``) and Gregorian (``2024/01/02``) trading dates.

    A leading apostrophe marks a two-digit Gregorian year (``'24/01/02``);
    any other year shorter than four digits is a ROC calendar year.
    """
    raw = _WS_RE.sub("", str(text or ""))
    match = _DATE_RE.match(raw)
    if match is None:
        raise MalformedFieldError("date", str(text), "unrecognised date format")
    year_s, month_s, day_s = match.groups()
    year = int(year_s)
    if len(year_s) == 4:
        pass
    elif raw.startswith("'"):
        year += 2000
    else:
        year += ROC_YEAR_OFFSET
    try:
        return date(year, int(month_s), int(day_s))
    except ValueError as exc:
        raise MalformedFieldError("date", str(text), str(exc)) from exc


def build_security(
    code: str, raw_name: str, refreshed_at: Optional[datetime] = None
) -> Security:
    """Build a ``Security`` from a listing code and raw display name."""
    code_clean = str(code or "").strip()
    if not _CODE_RE.match(code_clean):
        raise ValidationError(f"invalid security code={code!r}. Expected 4-6 digits.")
    name = _WS_RE.sub(" ", str(raw_name or "")).strip()
    if not name:
        raise ValidationError(f"empty security name for code={code_clean}")
    return Security(
        code=code_clean,
        name=name,
        last_updated=refreshed_at or datetime.now(timezone.utc),
    )


def _money(fields: Mapping[str, str], name: str) -> Optional[Decimal]:
    value = extract_decimal(fields.get(name))
    return None if value is None else value.quantize(CENT, rounding=ROUND_HALF_UP)


def _count(fields: Mapping[str, str], name: str) -> int:
    value = extract_int(fields.get(name), field=name)
    if value is None:
        return 0
    if value < 0:
        raise MalformedFieldError(name, str(fields.get(name)), "expected a non-negative count")
    return value


def _check_ohlc(
    open_: Optional[Decimal], high: Optional[Decimal], low: Optional[Decimal], close: Decimal
) -> None:
    # Absent bounds are skipped; present ones are always enforced.
    if low is not None and high is not None and low > high:
        raise InconsistentOHLCError(f"low={low} > high={high}")
    for label, value in (("open", open_), ("close", close)):
        if value is None:
            continue
        if low is not None and value < low:
            raise InconsistentOHLCError(f"{label}={value} below low={low}")
        if high is not None and value > high:
            raise InconsistentOHLCError(f"{label}={value} above high={high}")


def compute_change(close: Decimal, previous_close: Optional[Decimal]) -> Tuple[Decimal, Decimal]:
    """Return ``(change, change_percent)`` quantized to the storage scale."""
    if previous_close is None or previous_close == 0:
        return Decimal("0.00"), Decimal("0.00")
    change = close - previous_close
    percent = change / previous_close * 100
    return (
        change.quantize(CENT, rounding=ROUND_HALF_UP),
        percent.quantize(CENT, rounding=ROUND_HALF_UP),
    )


def build_snapshot(
    security: Security,
    trading_date: date,
    field_map: Mapping[str, str],
    previous: Optional[DailySnapshot] = None,
    as_of: Optional[date] = None,
    optional_values: Optional[Dict[str, object]] = None,
) -> DailySnapshot:
    """Build a validated ``DailySnapshot``.

    Parameters
    ----------
    security:
        Owning security; its ``id`` (if already persisted) is carried over.
    trading_date:
        Trading date of the row; must not be after ``as_of``.
    field_map:
        Raw price-history fragments keyed by field name.
    previous:
        Prior trading day snapshot used for change/change-percent. When absent
        both derived values are zero.
    as_of:
        Crawl date, defaults to today in Asia/Taipei.
    optional_values:
        Already-extracted valuation and institutional-flow values, copied
        through unchanged.

    Raises
    ------
    MissingMandatoryFieldError
        Close price not reported.
    MalformedFieldError
        Future trading date or unparseable count.
    InconsistentOHLCError
        OHLC bounds violated; values are never clamped or swapped.
    """
    crawl_date = as_of or taipei_today()
    if trading_date > crawl_date:
        raise MalformedFieldError(
            "date", trading_date.isoformat(), f"after crawl date {crawl_date.isoformat()}"
        )

    if is_not_reported(field_map.get("close")):
        raise MissingMandatoryFieldError("close", source=security.code)
    close = _money(field_map, "close")
    if close is None:
        raise MalformedFieldError("close", str(field_map.get("close")), "no number found")

    open_ = _money(field_map, "open")
    high = _money(field_map, "high")
    low = _money(field_map, "low")
    _check_ohlc(open_, high, low, close)

    change, change_percent = compute_change(close, previous.close if previous else None)

    extra = dict(optional_values or {})
    return DailySnapshot(
        security_code=security.code,
        security_id=security.id,
        date=trading_date,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=_count(field_map, "volume"),
        change=change,
        change_percent=change_percent,
        turnover=_count(field_map, "turnover"),
        transactions=_count(field_map, "transactions"),
        pe_ratio=extra.get("pe_ratio"),
        pb_ratio=extra.get("pb_ratio"),
        dividend_yield=extra.get("dividend_yield"),
        market_cap=extra.get("market_cap"),
        foreign_buy=extra.get("foreign_buy"),
        trust_buy=extra.get("trust_buy"),
        dealer_buy=extra.get("dealer_buy"),
    )
