from __future__ import annotations

"""ORM models for the security and daily price tables."""

import os
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

SCHEMA = os.getenv("POSTGRES_SCHEMA", "tw_equity")


class Base(DeclarativeBase):
    """Shared SQLAlchemy declarative base for project models."""


class StockRow(Base):
    __tablename__ = "stocks"
    __table_args__ = (
        UniqueConstraint("code", name="uniq_stock_code"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class StockPriceRow(Base):
    __tablename__ = "stock_prices"
    __table_args__ = (
        UniqueConstraint("stock_id", "date", name="uniq_stock_price_day"),
        CheckConstraint("volume >= 0", name="ck_stock_prices_volume"),
        CheckConstraint("turnover >= 0", name="ck_stock_prices_turnover"),
        CheckConstraint("transactions >= 0", name="ck_stock_prices_transactions"),
        Index("idx_stock_prices_date", "date"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    stock_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(f"{SCHEMA}.stocks.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    open: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    high: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    low: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    close: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=False)
    change: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    change_percent: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    turnover: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transactions: Mapped[int] = mapped_column(BigInteger, nullable=False)
    pe_ratio: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    pb_ratio: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    dividend_yield: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    market_cap: Mapped[Optional[int]] = mapped_column(BigInteger)
    foreign_buy: Mapped[Optional[int]] = mapped_column(BigInteger)
    trust_buy: Mapped[Optional[int]] = mapped_column(BigInteger)
    dealer_buy: Mapped[Optional[int]] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
