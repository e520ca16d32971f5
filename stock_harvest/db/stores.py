"""Store contracts for securities and daily snapshots, with SQL implementations."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional

from sqlalchemy import and_, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from stock_harvest.domain import DailySnapshot, Security, UpsertResult
from stock_harvest.errors import PersistenceConflictError

from stock_harvest.output.load import UpsertGateway, snapshot_from_row

from .db_connection import get_db_engine
from .models import StockPriceRow, StockRow


class SecurityStore(ABC):
    """Persistence contract for ``Security`` records keyed by exchange code."""

    @abstractmethod
    def create(self, security: Security) -> Security:
        """Insert a new security; raise ``PersistenceConflictError`` if the code exists."""

    @abstractmethod
    def find_by_id(self, security_id: uuid.UUID) -> Optional[Security]:
        ...

    @abstractmethod
    def find_by_code(self, code: str) -> Optional[Security]:
        ...

    @abstractmethod
    def find_all(self) -> List[Security]:
        ...

    @abstractmethod
    def upsert(self, security: Security) -> UpsertResult:
        ...


class SnapshotStore(ABC):
    """Persistence contract for ``DailySnapshot`` records keyed by (security, date)."""

    @abstractmethod
    def create(self, snapshot: DailySnapshot) -> DailySnapshot:
        ...

    @abstractmethod
    def upsert(self, snapshot: DailySnapshot) -> UpsertResult:
        ...

    @abstractmethod
    def find_by_security(self, security_id: uuid.UUID) -> List[DailySnapshot]:
        """Return every snapshot of a security, oldest first."""

    @abstractmethod
    def find_by_security_and_date_range(
        self,
        security_id: uuid.UUID,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailySnapshot]:
        """Return snapshots with ``start <= date <= end``, oldest first; a missing bound is open."""

    @abstractmethod
    def find_latest_for_security(
        self, security_id: uuid.UUID, before: Optional[date] = None
    ) -> Optional[DailySnapshot]:
        """Return the newest snapshot, or the newest strictly before ``before``."""


class SqlSecurityStore(SecurityStore):
    def __init__(self, engine: Optional[Engine] = None, gateway: Optional[UpsertGateway] = None):
        self.engine = engine or get_db_engine()
        self.gateway = gateway or UpsertGateway(self.engine)

    @staticmethod
    def _to_domain(row) -> Security:
        return Security(id=row["id"], code=row["code"], name=row["name"], last_updated=row["last_updated"])

    def create(self, security: Security) -> Security:
        table = StockRow.__table__
        stmt = (
            insert(table)
            .values(
                id=security.id or uuid.uuid4(),
                code=security.code,
                name=security.name,
                last_updated=security.last_updated,
            )
            .returning(*table.c)
        )
        try:
            with self.engine.begin() as conn:
                row = conn.execute(stmt).mappings().one()
        except IntegrityError as exc:
            raise PersistenceConflictError(f"security code={security.code} already exists") from exc
        return self._to_domain(row)

    def find_by_id(self, security_id: uuid.UUID) -> Optional[Security]:
        table = StockRow.__table__
        with self.engine.connect() as conn:
            row = conn.execute(select(table).where(table.c.id == security_id)).mappings().first()
        return None if row is None else self._to_domain(row)

    def find_by_code(self, code: str) -> Optional[Security]:
        table = StockRow.__table__
        with self.engine.connect() as conn:
            row = conn.execute(select(table).where(table.c.code == code)).mappings().first()
        return None if row is None else self._to_domain(row)

    def find_all(self) -> List[Security]:
        table = StockRow.__table__
        with self.engine.connect() as conn:
            rows = conn.execute(select(table).order_by(table.c.code)).mappings().all()
        return [self._to_domain(r) for r in rows]

    def upsert(self, security: Security) -> UpsertResult:
        return self.gateway.upsert_security(security)


class SqlSnapshotStore(SnapshotStore):
    def __init__(self, engine: Optional[Engine] = None, gateway: Optional[UpsertGateway] = None):
        self.engine = engine or get_db_engine()
        self.gateway = gateway or UpsertGateway(self.engine)

    def _select(self, *conditions):
        prices = StockPriceRow.__table__
        stocks = StockRow.__table__
        return (
            select(prices, stocks.c.code.label("security_code"))
            .join(stocks, stocks.c.id == prices.c.stock_id)
            .where(and_(*conditions))
        )

    @staticmethod
    def _to_domain(row) -> DailySnapshot:
        return snapshot_from_row(row, row["security_code"])

    def create(self, snapshot: DailySnapshot) -> DailySnapshot:
        if snapshot.security_id is None:
            raise PersistenceConflictError(
                f"snapshot code={snapshot.security_code} date={snapshot.date} has no security_id"
            )
        table = StockPriceRow.__table__
        stmt = insert(table).values(
            id=uuid.uuid4(), stock_id=snapshot.security_id, date=snapshot.date, **snapshot.values()
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except IntegrityError as exc:
            raise PersistenceConflictError(
                f"snapshot code={snapshot.security_code} date={snapshot.date} rejected: {exc.orig}"
            ) from exc
        return snapshot

    def upsert(self, snapshot: DailySnapshot) -> UpsertResult:
        return self.gateway.upsert_snapshot(snapshot)

    def find_by_security(self, security_id: uuid.UUID) -> List[DailySnapshot]:
        prices = StockPriceRow.__table__
        stmt = self._select(prices.c.stock_id == security_id).order_by(prices.c.date)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._to_domain(r) for r in rows]

    def find_by_security_and_date_range(
        self,
        security_id: uuid.UUID,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailySnapshot]:
        prices = StockPriceRow.__table__
        conditions = [prices.c.stock_id == security_id]
        if start is not None:
            conditions.append(prices.c.date >= start)
        if end is not None:
            conditions.append(prices.c.date <= end)
        stmt = self._select(*conditions).order_by(prices.c.date)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._to_domain(r) for r in rows]

    def find_latest_for_security(
        self, security_id: uuid.UUID, before: Optional[date] = None
    ) -> Optional[DailySnapshot]:
        prices = StockPriceRow.__table__
        conditions = [prices.c.stock_id == security_id]
        if before is not None:
            conditions.append(prices.c.date < before)
        stmt = self._select(*conditions).order_by(prices.c.date.desc()).limit(1)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return None if row is None else self._to_domain(row)
