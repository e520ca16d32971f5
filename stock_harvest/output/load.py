from __future__ import annotations

"""Idempotent upserts of securities and daily snapshots into PostgreSQL."""

import logging
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import and_, func, literal_column, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from stock_harvest.db.db_connection import get_db_engine
from stock_harvest.db.models import StockPriceRow, StockRow
from stock_harvest.domain import (
    OPTIONAL_FIELDS,
    SNAPSHOT_VALUE_FIELDS,
    DailySnapshot,
    Security,
    UpsertResult,
)
from stock_harvest.errors import PersistenceConflictError, PersistenceTransientError

logger = logging.getLogger(__name__)

STOCKS = StockRow.__table__
STOCK_PRICES = StockPriceRow.__table__

INSERTED = "inserted"
UPDATED = "updated"
UNCHANGED = "unchanged"

# True only for a row created by this statement.
_INSERTED_FLAG = literal_column("(xmax = 0)").label("was_inserted")


def security_upsert_statement(security: Security):
    """Build the single-statement upsert for a security keyed by exchange code."""
    stmt = pg_insert(STOCKS).values(
        id=security.id or uuid.uuid4(),
        code=security.code,
        name=security.name,
        last_updated=security.last_updated,
    )
    excluded = stmt.excluded
    return stmt.on_conflict_do_update(
        constraint="uniq_stock_code",
        set_={
            "name": excluded.name,
            "last_updated": excluded.last_updated,
            "updated_at": func.now(),
        },
        where=or_(
            STOCKS.c.name.is_distinct_from(excluded.name),
            STOCKS.c.last_updated.is_distinct_from(excluded.last_updated),
        ),
    ).returning(*STOCKS.c, _INSERTED_FLAG)


def snapshot_upsert_statement(snapshot: DailySnapshot):
    """Build the single-statement upsert for a snapshot keyed by (stock_id, date).

    Optional columns merge as ``COALESCE(excluded, current)`` so an absent
    value never erases a stored one. The ``WHERE`` clause turns an identical
    row into a no-op that returns nothing.
    """
    if snapshot.security_id is None:
        raise PersistenceConflictError(
            f"snapshot code={snapshot.security_code} date={snapshot.date} has no security_id"
        )
    stmt = pg_insert(STOCK_PRICES).values(
        id=uuid.uuid4(),
        stock_id=snapshot.security_id,
        date=snapshot.date,
        **snapshot.values(),
    )
    excluded = stmt.excluded

    new_values: Dict[str, Any] = {}
    for name in SNAPSHOT_VALUE_FIELDS:
        column = STOCK_PRICES.c[name]
        incoming = getattr(excluded, name)
        new_values[name] = func.coalesce(incoming, column) if name in OPTIONAL_FIELDS else incoming

    changed = or_(
        *(STOCK_PRICES.c[name].is_distinct_from(value) for name, value in new_values.items())
    )
    return stmt.on_conflict_do_update(
        constraint="uniq_stock_price_day",
        set_={**new_values, "updated_at": func.now()},
        where=changed,
    ).returning(*STOCK_PRICES.c, _INSERTED_FLAG)


def _security_from_row(row: Mapping[str, Any]) -> Security:
    return Security(
        id=row["id"],
        code=row["code"],
        name=row["name"],
        last_updated=row["last_updated"],
    )


def snapshot_from_row(row: Mapping[str, Any], security_code: str) -> DailySnapshot:
    return DailySnapshot(
        security_code=security_code,
        security_id=row["stock_id"],
        date=row["date"],
        **{name: row[name] for name in SNAPSHOT_VALUE_FIELDS},
    )


class UpsertGateway:
    """Single-statement insert-or-update against the ``stocks``/``stock_prices`` tables.

    Each call runs one ``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` in its
    own transaction, so concurrent callers on different keys never interfere
    and a retried call cannot create a duplicate row.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._engine = engine
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_db_engine()
        return self._engine

    def _execute(self, label: str, build, reload):
        """Run ``build()`` and return ``(status, row)``; ``reload`` fetches the stored row."""
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                with self.engine.begin() as conn:
                    row = conn.execute(build()).mappings().first()
                    if row is None:
                        return UNCHANGED, conn.execute(reload()).mappings().first()
                    return (INSERTED if row["was_inserted"] else UPDATED), row
            except IntegrityError as exc:
                raise PersistenceConflictError(f"{label} violates a constraint: {exc.orig}") from exc
            except (OperationalError, DBAPIError) as exc:
                transient = isinstance(exc, OperationalError) or exc.connection_invalidated
                if not transient:
                    raise PersistenceConflictError(f"{label} rejected: {exc.orig}") from exc
                if attempt < attempts - 1:
                    delay = self.backoff_seconds * (2**attempt)
                    logger.warning(
                        "upsert_retry target=%s attempt=%s delay_s=%.1f reason=%r",
                        label,
                        attempt + 1,
                        delay,
                        exc,
                    )
                    self._sleep(delay)
                    continue
                raise PersistenceTransientError(
                    f"{label} failed after {attempts} attempts: {exc}"
                ) from exc
        raise PersistenceTransientError(f"{label} exhausted retries")

    def upsert_security(self, security: Security) -> UpsertResult:
        status, row = self._execute(
            f"security code={security.code}",
            lambda: security_upsert_statement(security),
            lambda: select(STOCKS).where(STOCKS.c.code == security.code),
        )
        logger.debug("security_upsert code=%s status=%s", security.code, status)
        return UpsertResult(status=status, record=_security_from_row(row))

    def upsert_snapshot(self, snapshot: DailySnapshot) -> UpsertResult:
        """Insert or update one snapshot.

        Returns
        -------
        UpsertResult
            ``status`` is ``inserted``, ``updated`` or ``unchanged``; ``record``
            is the stored snapshot after the merge.

        Raises
        ------
        PersistenceConflictError
            Missing ``security_id``, unknown owning security or a failed
            check constraint.
        PersistenceTransientError
            Storage still unavailable after the configured retries.
        """
        statement = snapshot_upsert_statement(snapshot)
        status, row = self._execute(
            f"snapshot code={snapshot.security_code} date={snapshot.date}",
            lambda: statement,
            lambda: select(STOCK_PRICES).where(
                and_(
                    STOCK_PRICES.c.stock_id == snapshot.security_id,
                    STOCK_PRICES.c.date == snapshot.date,
                )
            ),
        )
        logger.debug(
            "snapshot_upsert code=%s date=%s status=%s", snapshot.security_code, snapshot.date, status
        )
        return UpsertResult(status=status, record=snapshot_from_row(row, snapshot.security_code))
