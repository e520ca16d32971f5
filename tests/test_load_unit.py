import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from stock_harvest.domain import OPTIONAL_FIELDS, SNAPSHOT_VALUE_FIELDS, DailySnapshot, Security
from stock_harvest.errors import PersistenceConflictError, PersistenceTransientError
from stock_harvest.output.load import (
    UpsertGateway,
    security_upsert_statement,
    snapshot_upsert_statement,
)

SID = uuid.uuid4()
NOW = datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)


def _compile(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _snapshot(**overrides):
    base = dict(
        security_code="2330",
        security_id=SID,
        date=date(2024, 1, 3),
        open=Decimal("584.00"),
        high=Decimal("585.00"),
        low=Decimal("578.00"),
        close=Decimal("578.00"),
        volume=37106886,
        change=Decimal("-15.00"),
        change_percent=Decimal("-2.53"),
        turnover=21588909015,
        transactions=35464,
    )
    base.update(overrides)
    return DailySnapshot(**base)


def _snapshot_row(snapshot, was_inserted):
    row = {name: getattr(snapshot, name) for name in SNAPSHOT_VALUE_FIELDS}
    row.update(id=uuid.uuid4(), stock_id=snapshot.security_id, date=snapshot.date)
    row["was_inserted"] = was_inserted
    return row


def test_snapshot_statement_is_single_conditional_upsert():
    sql = _compile(snapshot_upsert_statement(_snapshot()))
    assert "ON CONFLICT ON CONSTRAINT uniq_stock_price_day DO UPDATE" in sql
    assert "IS DISTINCT FROM" in sql
    assert "RETURNING" in sql
    assert "xmax = 0" in sql


def test_snapshot_statement_merges_optional_fields_with_coalesce():
    sql = _compile(snapshot_upsert_statement(_snapshot()))
    for name in OPTIONAL_FIELDS:
        assert f"coalesce(excluded.{name}" in sql
    assert "coalesce(excluded.volume" not in sql


def test_security_statement_keys_on_code():
    security = Security(code="2330", name="台積電", last_updated=NOW)
    sql = _compile(security_upsert_statement(security))
    assert "ON CONFLICT ON CONSTRAINT uniq_stock_code DO UPDATE" in sql
    assert "IS DISTINCT FROM" in sql


def test_snapshot_without_security_id_is_conflict():
    with pytest.raises(PersistenceConflictError):
        snapshot_upsert_statement(_snapshot(security_id=None))


class _Result:
    def __init__(self, row):
        self._row = row

    def mappings(self):
        return self

    def first(self):
        return self._row


class _FakeConn:
    def __init__(self, script):
        self.script = script
        self.executed = []

    def execute(self, stmt):
        self.executed.append(stmt)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return _Result(item)


class _Ctx:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self.conn

    def __exit__(self, exc_type, exc, tb):
        return False


class _Engine:
    def __init__(self, script):
        self.conn = _FakeConn(script)
        self.begins = 0

    def begin(self):
        self.begins += 1
        return _Ctx(self.conn)


def test_upsert_snapshot_inserted():
    snap = _snapshot()
    engine = _Engine([_snapshot_row(snap, True)])
    result = UpsertGateway(engine).upsert_snapshot(snap)
    assert result.status == "inserted"
    assert result.record.values() == snap.values()
    assert result.record.security_id == SID


def test_upsert_snapshot_updated():
    snap = _snapshot()
    engine = _Engine([_snapshot_row(snap, False)])
    assert UpsertGateway(engine).upsert_snapshot(snap).status == "updated"


def test_upsert_snapshot_unchanged_reloads_stored_row():
    snap = _snapshot()
    stored = _snapshot(pe_ratio=Decimal("15.20"))
    engine = _Engine([None, _snapshot_row(stored, False)])
    result = UpsertGateway(engine).upsert_snapshot(snap)
    assert result.status == "unchanged"
    assert result.record.pe_ratio == Decimal("15.20")
    assert len(engine.conn.executed) == 2


def test_upsert_security_returns_persisted_id():
    sid = uuid.uuid4()
    row = {"id": sid, "code": "2330", "name": "台積電", "last_updated": NOW, "was_inserted": True}
    engine = _Engine([row])
    result = UpsertGateway(engine).upsert_security(Security(code="2330", name="台積電", last_updated=NOW))
    assert result.status == "inserted"
    assert result.record.id == sid


def test_transient_error_is_retried():
    snap = _snapshot()
    sleeps = []
    engine = _Engine(
        [OperationalError("INSERT", {}, Exception("server closed")), _snapshot_row(snap, True)]
    )
    gateway = UpsertGateway(engine, max_retries=2, backoff_seconds=0.5, sleep=sleeps.append)
    assert gateway.upsert_snapshot(snap).status == "inserted"
    assert sleeps == [0.5]
    assert engine.begins == 2


def test_transient_error_exhausts_retries():
    snap = _snapshot()
    engine = _Engine([OperationalError("INSERT", {}, Exception("down")) for _ in range(3)])
    gateway = UpsertGateway(engine, max_retries=2, sleep=lambda s: None)
    with pytest.raises(PersistenceTransientError):
        gateway.upsert_snapshot(snap)


def test_integrity_error_is_conflict_and_not_retried():
    snap = _snapshot()
    engine = _Engine([IntegrityError("INSERT", {}, Exception("fk violation"))])
    gateway = UpsertGateway(engine, sleep=lambda s: pytest.fail("must not retry"))
    with pytest.raises(PersistenceConflictError):
        gateway.upsert_snapshot(snap)
    assert engine.begins == 1
