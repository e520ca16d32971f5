import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from stock_harvest.db.stores import SqlSecurityStore, SqlSnapshotStore
from stock_harvest.domain import DailySnapshot, Security, UpsertResult
from stock_harvest.errors import PersistenceConflictError

NOW = datetime(2024, 1, 3, tzinfo=timezone.utc)


class _Result:
    def __init__(self, rows):
        self.rows = rows

    def mappings(self):
        return self

    def first(self):
        return self.rows[0] if self.rows else None

    def one(self):
        return self.rows[0]

    def all(self):
        return list(self.rows)


class _Conn:
    def __init__(self, engine):
        self.engine = engine

    def execute(self, stmt):
        self.engine.statements.append(stmt)
        if isinstance(self.engine.rows, Exception):
            raise self.engine.rows
        return _Result(self.engine.rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _Engine:
    def __init__(self, rows=None):
        self.rows = rows if rows is not None else []
        self.statements = []

    def connect(self):
        return _Conn(self)

    def begin(self):
        return _Conn(self)


class _Gateway:
    def __init__(self):
        self.calls = []

    def upsert_security(self, security):
        self.calls.append(security)
        return UpsertResult("inserted", security)

    def upsert_snapshot(self, snapshot):
        self.calls.append(snapshot)
        return UpsertResult("unchanged", snapshot)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def test_find_by_code_maps_row():
    sid = uuid.uuid4()
    engine = _Engine([{"id": sid, "code": "2330", "name": "台積電", "last_updated": NOW}])
    store = SqlSecurityStore(engine, gateway=_Gateway())
    found = store.find_by_code("2330")
    assert found == Security(code="2330", name="台積電", last_updated=NOW, id=sid)


def test_find_by_code_missing_returns_none():
    store = SqlSecurityStore(_Engine([]), gateway=_Gateway())
    assert store.find_by_code("9999") is None


def test_security_create_duplicate_is_conflict():
    engine = _Engine(IntegrityError("INSERT", {}, Exception("duplicate key")))
    store = SqlSecurityStore(engine, gateway=_Gateway())
    with pytest.raises(PersistenceConflictError):
        store.create(Security(code="2330", name="台積電", last_updated=NOW))


def test_upserts_delegate_to_gateway():
    gateway = _Gateway()
    security = Security(code="2330", name="台積電", last_updated=NOW)
    assert SqlSecurityStore(_Engine(), gateway=gateway).upsert(security).status == "inserted"
    snap = DailySnapshot(
        security_code="2330", security_id=uuid.uuid4(), date=date(2024, 1, 3), close=Decimal("1")
    )
    assert SqlSnapshotStore(_Engine(), gateway=gateway).upsert(snap).status == "unchanged"
    assert gateway.calls == [security, snap]


def test_find_latest_before_orders_descending_with_limit():
    engine = _Engine([])
    store = SqlSnapshotStore(engine, gateway=_Gateway())
    assert store.find_latest_for_security(uuid.uuid4(), before=date(2024, 1, 2)) is None
    sql = _sql(engine.statements[0])
    assert " < " in sql
    assert "DESC" in sql
    assert "LIMIT" in sql


def test_snapshot_create_without_security_id_is_conflict():
    store = SqlSnapshotStore(_Engine(), gateway=_Gateway())
    snap = DailySnapshot(security_code="2330", date=date(2024, 1, 3), close=Decimal("1"))
    with pytest.raises(PersistenceConflictError):
        store.create(snap)


def test_find_by_id_filters_on_primary_key():
    sid = uuid.uuid4()
    engine = _Engine([{"id": sid, "code": "2330", "name": "台積電", "last_updated": NOW}])
    store = SqlSecurityStore(engine, gateway=_Gateway())
    assert store.find_by_id(sid).code == "2330"
    assert "stocks.id = " in _sql(engine.statements[0])


def test_date_range_omits_missing_bounds():
    engine = _Engine([])
    store = SqlSnapshotStore(engine, gateway=_Gateway())
    store.find_by_security_and_date_range(uuid.uuid4(), start=date(2024, 1, 2))
    store.find_by_security_and_date_range(uuid.uuid4())
    since, unbounded = (_sql(stmt) for stmt in engine.statements)
    assert ">=" in since and "<=" not in since
    assert ">=" not in unbounded and "<=" not in unbounded
