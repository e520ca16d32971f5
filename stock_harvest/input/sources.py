"""Source descriptors: base address, declared encoding and field locators.

Descriptors are validated once at startup and never mutated afterwards. The
defaults below describe the shipped sources; the YAML ``sources:`` section
may override any key of any descriptor.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .document import FieldLocator

LISTING = "listing"
PRICE_HISTORY = "price_history"
FUNDAMENTALS = "fundamentals"
INSTITUTIONAL = "institutional"

SOURCE_ORDER = (LISTING, PRICE_HISTORY, FUNDAMENTALS, INSTITUTIONAL)
ALLOWED_MODES = {"table", "fields"}


@dataclass(frozen=True)
class SourceDescriptor:
    """Static description of one scraped source.

    ``url_template`` may reference ``{code}``, ``{yyyymmdd}`` (first day of
    the run month) and ``{run_date}``.
    """

    name: str
    url_template: str
    encoding: str
    locators: Tuple[FieldLocator, ...]
    mode: str = "table"
    table_selector: str = "table"
    headers: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def url_for(self, code: str, run_date: str) -> str:
        yyyymmdd = run_date.replace("-", "")[:6] + "01"
        return self.url_template.format(code=code, yyyymmdd=yyyymmdd, run_date=run_date)

    def validate(self) -> "SourceDescriptor":
        parsed = urlparse(self.url_template)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"source={self.name} invalid url_template={self.url_template!r}")
        try:
            codecs.lookup(self.encoding)
        except LookupError as exc:
            raise ValueError(f"source={self.name} unknown encoding={self.encoding!r}") from exc
        if self.mode not in ALLOWED_MODES:
            raise ValueError(
                f"source={self.name} invalid mode={self.mode!r}. Allowed: {sorted(ALLOWED_MODES)}"
            )
        if not self.locators:
            raise ValueError(f"source={self.name} declares no field locators")
        names = [loc.name for loc in self.locators]
        if len(set(names)) != len(names):
            raise ValueError(f"source={self.name} has duplicate locator names: {names}")
        return self


_BROWSER_HEADERS = (
    (
        "User-Agent",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    ),
    ("Accept", "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"),
    ("Accept-Language", "zh-TW,zh;q=0.9,en-US;q=0.8,en;q=0.7"),
)

_GOODINFO_HEADERS = _BROWSER_HEADERS + (("Referer", "https://goodinfo.tw/tw/index.asp"),)

DEFAULT_SOURCES: Dict[str, SourceDescriptor] = {
    LISTING: SourceDescriptor(
        name=LISTING,
        url_template=(
            "https://isin.twse.com.tw/isin/class_main.jsp?owncode={code}"
            "&stockname=&isincode=&market=1&issuetype=1&industry_code=&Page=1&chklike=Y"
        ),
        encoding="cp950",
        mode="table",
        table_selector="table.h4",
        locators=(
            FieldLocator("code", "有價證券代號", required=True),
            FieldLocator("name", "有價證券名稱", required=True),
        ),
        headers=_BROWSER_HEADERS,
    ),
    PRICE_HISTORY: SourceDescriptor(
        name=PRICE_HISTORY,
        url_template=(
            "https://www.twse.com.tw/exchangeReport/STOCK_DAY"
            "?response=html&date={yyyymmdd}&stockNo={code}"
        ),
        encoding="utf-8",
        mode="table",
        locators=(
            FieldLocator("date", "日期", required=True),
            FieldLocator("volume", "成交股數"),
            FieldLocator("turnover", "成交金額"),
            FieldLocator("open", "開盤價"),
            FieldLocator("high", "最高價"),
            FieldLocator("low", "最低價"),
            FieldLocator("close", "收盤價", required=True),
            FieldLocator("transactions", "成交筆數"),
        ),
        headers=_BROWSER_HEADERS,
    ),
    FUNDAMENTALS: SourceDescriptor(
        name=FUNDAMENTALS,
        url_template="https://goodinfo.tw/tw/StockDetail.asp?STOCK_ID={code}",
        encoding="utf-8",
        mode="fields",
        locators=(
            FieldLocator("pe_ratio", "本益比"),
            FieldLocator("pb_ratio", "股價淨值比"),
            FieldLocator("dividend_yield", "殖利率"),
            FieldLocator("market_cap", "市值"),
        ),
        headers=_GOODINFO_HEADERS,
    ),
    INSTITUTIONAL: SourceDescriptor(
        name=INSTITUTIONAL,
        url_template="https://goodinfo.tw/tw/ShowBuySaleChart.asp?STOCK_ID={code}",
        encoding="utf-8",
        mode="table",
        locators=(
            FieldLocator("date", "日期", required=True),
            FieldLocator("foreign_buy", "外資"),
            FieldLocator("trust_buy", "投信"),
            FieldLocator("dealer_buy", "自營"),
        ),
        headers=_GOODINFO_HEADERS,
    ),
}


def _locators_from_config(raw: Any, source: str) -> Tuple[FieldLocator, ...]:
    if not isinstance(raw, list):
        raise ValueError(f"source={source} locators must be a list, got {type(raw).__name__}")
    out = []
    for item in raw:
        if not isinstance(item, Mapping) or not item.get("name") or not item.get("label"):
            raise ValueError(f"source={source} invalid locator={item!r}")
        out.append(
            FieldLocator(
                name=str(item["name"]).strip(),
                label=str(item["label"]).strip(),
                selector=str(item.get("selector") or "td, th"),
                required=bool(item.get("required", False)),
            )
        )
    return tuple(out)


def load_source_descriptors(
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, SourceDescriptor]:
    """Return validated descriptors: defaults overlaid with ``config['sources']``."""
    overrides = (config or {}).get("sources") or {}
    if not isinstance(overrides, Mapping):
        raise ValueError("config 'sources' must be a mapping of source name -> settings")

    unknown = sorted(set(overrides) - set(DEFAULT_SOURCES))
    if unknown:
        raise ValueError(f"Unknown sources={unknown}. Allowed: {list(SOURCE_ORDER)}")

    out: Dict[str, SourceDescriptor] = {}
    for name in SOURCE_ORDER:
        base = DEFAULT_SOURCES[name]
        cfg = overrides.get(name) or {}
        locators = (
            _locators_from_config(cfg["locators"], name) if "locators" in cfg else base.locators
        )
        descriptor = SourceDescriptor(
            name=name,
            url_template=str(cfg.get("url_template", base.url_template)),
            encoding=str(cfg.get("encoding", base.encoding)).strip().lower(),
            locators=locators,
            mode=str(cfg.get("mode", base.mode)).strip().lower(),
            table_selector=str(cfg.get("table_selector", base.table_selector)),
            headers=base.headers,
        )
        out[name] = descriptor.validate()
    return out
