"""Lock-guarded in-memory stores used by ``--dry-run`` and the unit tests.

Upsert semantics mirror the SQL gateway: optional fields merge onto the
stored row, an identical record is reported ``unchanged`` and leaves
``updated_at`` untouched.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from stock_harvest.domain import DailySnapshot, Security, UpsertResult
from stock_harvest.errors import PersistenceConflictError

from .stores import SecurityStore, SnapshotStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySecurityStore(SecurityStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._by_code: Dict[str, Security] = {}
        self.updated_at: Dict[str, datetime] = {}

    def create(self, security: Security) -> Security:
        with self._lock:
            if security.code in self._by_code:
                raise PersistenceConflictError(f"security code={security.code} already exists")
            stored = replace(security, id=security.id or uuid.uuid4())
            self._by_code[stored.code] = stored
            self.updated_at[stored.code] = _now()
            return stored

    def find_by_id(self, security_id: uuid.UUID) -> Optional[Security]:
        with self._lock:
            return next((s for s in self._by_code.values() if s.id == security_id), None)

    def find_by_code(self, code: str) -> Optional[Security]:
        with self._lock:
            return self._by_code.get(code)

    def find_all(self) -> List[Security]:
        with self._lock:
            return [self._by_code[code] for code in sorted(self._by_code)]

    def upsert(self, security: Security) -> UpsertResult:
        with self._lock:
            current = self._by_code.get(security.code)
            if current is None:
                stored = replace(security, id=security.id or uuid.uuid4())
                status = "inserted"
            elif (current.name, current.last_updated) == (security.name, security.last_updated):
                return UpsertResult(status="unchanged", record=current)
            else:
                # The id is assigned once and never replaced.
                stored = replace(security, id=current.id)
                status = "updated"
            self._by_code[stored.code] = stored
            self.updated_at[stored.code] = _now()
            return UpsertResult(status=status, record=stored)


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self, securities: Optional[InMemorySecurityStore] = None):
        self._lock = threading.Lock()
        self._securities = securities
        self._rows: Dict[Tuple[uuid.UUID, date], DailySnapshot] = {}
        self.updated_at: Dict[Tuple[uuid.UUID, date], datetime] = {}

    def _check_owner(self, snapshot: DailySnapshot) -> None:
        if snapshot.security_id is None:
            raise PersistenceConflictError(
                f"snapshot code={snapshot.security_code} date={snapshot.date} has no security_id"
            )
        if self._securities is not None:
            known = {s.id for s in self._securities.find_all()}
            if snapshot.security_id not in known:
                raise PersistenceConflictError(
                    f"snapshot code={snapshot.security_code} references unknown security"
                )

    def create(self, snapshot: DailySnapshot) -> DailySnapshot:
        self._check_owner(snapshot)
        with self._lock:
            if snapshot.key in self._rows:
                raise PersistenceConflictError(
                    f"snapshot code={snapshot.security_code} date={snapshot.date} already exists"
                )
            self._rows[snapshot.key] = snapshot
            self.updated_at[snapshot.key] = _now()
            return snapshot

    def upsert(self, snapshot: DailySnapshot) -> UpsertResult:
        self._check_owner(snapshot)
        with self._lock:
            current = self._rows.get(snapshot.key)
            if current is None:
                status = "inserted"
                stored = snapshot
            else:
                stored = snapshot.merged_onto(current)
                if stored.values() == current.values():
                    return UpsertResult(status="unchanged", record=current)
                status = "updated"
            self._rows[snapshot.key] = stored
            self.updated_at[snapshot.key] = _now()
            return UpsertResult(status=status, record=stored)

    def _for(self, security_id: uuid.UUID) -> List[DailySnapshot]:
        with self._lock:
            rows = [s for (sid, _), s in self._rows.items() if sid == security_id]
        return sorted(rows, key=lambda s: s.date)

    def find_by_security(self, security_id: uuid.UUID) -> List[DailySnapshot]:
        return self._for(security_id)

    def find_by_security_and_date_range(
        self,
        security_id: uuid.UUID,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailySnapshot]:
        return [
            s
            for s in self._for(security_id)
            if (start is None or s.date >= start) and (end is None or s.date <= end)
        ]

    def find_latest_for_security(
        self, security_id: uuid.UUID, before: Optional[date] = None
    ) -> Optional[DailySnapshot]:
        rows = self._for(security_id)
        if before is not None:
            rows = [s for s in rows if s.date < before]
        return rows[-1] if rows else None
