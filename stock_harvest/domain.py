"""Domain records shared by the parser, builder, stores and gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

VALUATION_FIELDS = ("pe_ratio", "pb_ratio", "dividend_yield", "market_cap")
INSTITUTIONAL_FIELDS = ("foreign_buy", "trust_buy", "dealer_buy")
OPTIONAL_FIELDS = VALUATION_FIELDS + INSTITUTIONAL_FIELDS

# Columns compared when deciding whether a stored snapshot changed.
SNAPSHOT_VALUE_FIELDS = (
    "open",
    "high",
    "low",
    "close",
    "volume",
    "change",
    "change_percent",
    "turnover",
    "transactions",
) + OPTIONAL_FIELDS


@dataclass(frozen=True)
class Security:
    code: str
    name: str
    last_updated: datetime
    id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class DailySnapshot:
    """One trading day of data for one security.

    ``security_id`` stays ``None`` until the owning security has been
    persisted; the gateway refuses to write a snapshot without it.
    """

    security_code: str
    date: date
    close: Decimal
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    volume: int = 0
    change: Decimal = Decimal("0.00")
    change_percent: Decimal = Decimal("0.00")
    turnover: int = 0
    transactions: int = 0
    pe_ratio: Optional[Decimal] = None
    pb_ratio: Optional[Decimal] = None
    dividend_yield: Optional[Decimal] = None
    market_cap: Optional[int] = None
    foreign_buy: Optional[int] = None
    trust_buy: Optional[int] = None
    dealer_buy: Optional[int] = None
    security_id: Optional[uuid.UUID] = None

    @property
    def key(self) -> tuple:
        return (self.security_id, self.date)

    def values(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SNAPSHOT_VALUE_FIELDS}

    def merged_onto(self, stored: "DailySnapshot") -> "DailySnapshot":
        """Return this snapshot with absent optional fields kept from ``stored``."""
        kept = {
            name: getattr(stored, name)
            for name in OPTIONAL_FIELDS
            if getattr(self, name) is None and getattr(stored, name) is not None
        }
        if not kept:
            return self
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update(kept)
        return DailySnapshot(**data)


@dataclass(frozen=True)
class UpsertResult:
    status: str  # inserted | updated | unchanged
    record: Any
