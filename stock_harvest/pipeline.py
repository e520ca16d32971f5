"""Pipeline coordinator: drive every configured security through the harvest.

Each security runs in its own task and owns its ``SecurityOutcome``; the
coordinator only collects outcomes after the tasks finish, so no counter
or list is shared between concurrent securities.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from stock_harvest.db.stores import SecurityStore, SnapshotStore
from stock_harvest.domain import DailySnapshot, Security
from stock_harvest.errors import (
    HarvestError,
    PersistenceConflictError,
    RunFailedError,
    ValidationError,
)
from stock_harvest.input.harvest import Harvester

logger = logging.getLogger(__name__)


class SecurityState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class SecurityOutcome:
    code: str
    state: SecurityState = SecurityState.PENDING
    security_id: Optional[uuid.UUID] = None
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    degraded_sources: List[str] = field(default_factory=list)
    issues: List[Dict[str, str]] = field(default_factory=list)
    records: List[DailySnapshot] = field(default_factory=list)
    error: str = ""
    elapsed_ms: int = 0

    def count(self, status: str) -> None:
        setattr(self, status, getattr(self, status) + 1)

    def summary(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "state": self.state.value,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "degraded_sources": list(self.degraded_sources),
            "issues": len(self.issues),
            "error": self.error,
        }


@dataclass
class RunReport:
    run_id: str
    outcomes: List[SecurityOutcome] = field(default_factory=list)

    @property
    def persisted(self) -> List[SecurityOutcome]:
        return [o for o in self.outcomes if o.state is SecurityState.PERSISTED]

    @property
    def failed(self) -> List[SecurityOutcome]:
        return [o for o in self.outcomes if o.state is SecurityState.FAILED]

    @property
    def succeeded(self) -> bool:
        return bool(self.persisted)

    def totals(self) -> Dict[str, int]:
        return {
            "securities": len(self.outcomes),
            "persisted": len(self.persisted),
            "failed": len(self.failed),
            "inserted": sum(o.inserted for o in self.outcomes),
            "updated": sum(o.updated for o in self.outcomes),
            "unchanged": sum(o.unchanged for o in self.outcomes),
        }

    def records(self) -> List[DailySnapshot]:
        return [s for o in self.outcomes for s in o.records]

    def raise_for_status(self) -> None:
        if not self.succeeded:
            details = "; ".join(f"{o.code}: {o.error}" for o in self.failed) or "no securities"
            raise RunFailedError(f"run_id={self.run_id} persisted no security ({details})")


class PipelineCoordinator:
    """Run the harvest for a list of securities with bounded concurrency.

    A failing security is marked ``failed`` and never stops the others; the
    run as a whole fails only when no security reached ``persisted``.
    """

    def __init__(
        self,
        harvester: Harvester,
        security_store: SecurityStore,
        snapshot_store: SnapshotStore,
        max_in_flight: int = 2,
        run_id: Optional[str] = None,
    ):
        if max_in_flight < 1:
            raise ValueError(f"Invalid max_in_flight={max_in_flight}. Expected integer >= 1.")
        self.harvester = harvester
        self.security_store = security_store
        self.snapshot_store = snapshot_store
        self.max_in_flight = max_in_flight
        self.run_id = run_id or str(uuid.uuid4())

    def run(self, securities: Sequence[Security]) -> RunReport:
        report = RunReport(run_id=self.run_id)
        if not securities:
            return report
        with ThreadPoolExecutor(
            max_workers=self.max_in_flight, thread_name_prefix="security"
        ) as pool:
            futures = [pool.submit(self.process, security) for security in securities]
            report.outcomes = [f.result() for f in futures]

        logger.info(
            "run_done run_id=%s persisted=%s failed=%s inserted=%s updated=%s unchanged=%s",
            self.run_id,
            len(report.persisted),
            len(report.failed),
            *(report.totals()[k] for k in ("inserted", "updated", "unchanged")),
        )
        return report

    def _previous_lookup(self, security_id: Optional[uuid.UUID]):
        if security_id is None:
            return None

        def lookup(first_day):
            return self.snapshot_store.find_latest_for_security(security_id, before=first_day)

        return lookup

    def process(self, security: Security) -> SecurityOutcome:
        """Harvest and persist one security; never raises."""
        outcome = SecurityOutcome(code=security.code)
        t0 = time.monotonic()
        try:
            outcome.state = SecurityState.FETCHING
            stored = self.security_store.find_by_code(security.code)
            if stored is not None:
                security = replace(security, id=stored.id)
            result = self.harvester.harvest(
                security, previous_lookup=self._previous_lookup(security.id)
            )

            outcome.state = SecurityState.PARSING
            outcome.degraded_sources.extend(result.degraded_sources)
            outcome.issues.extend(result.issues)

            if not result.snapshots:
                raise ValidationError(
                    f"no snapshot accepted for code={security.code} issues={len(result.issues)}"
                )

            security_result = self.security_store.upsert(result.security)
            outcome.security_id = security_result.record.id
            rejected: List[str] = []
            for snapshot in result.snapshots:
                bound = replace(snapshot, security_id=outcome.security_id)
                try:
                    upserted = self.snapshot_store.upsert(bound)
                except PersistenceConflictError as exc:
                    logger.warning(
                        "snapshot_rejected run_id=%s code=%s date=%s error=%s",
                        self.run_id,
                        security.code,
                        snapshot.date,
                        exc,
                    )
                    outcome.issues.append(
                        {
                            "stage": "persist",
                            "error": type(exc).__name__,
                            "message": str(exc),
                            "date": snapshot.date.isoformat(),
                        }
                    )
                    rejected.append(f"{snapshot.date.isoformat()}: {exc}")
                    continue
                outcome.count(upserted.status)
                outcome.records.append(upserted.record)
            if rejected:
                # Accepted rows stay stored.
                raise PersistenceConflictError(
                    f"{len(rejected)} snapshot(s) rejected: " + "; ".join(rejected)
                )
            outcome.state = SecurityState.PERSISTED
            logger.info(
                "security_ok run_id=%s code=%s inserted=%s updated=%s unchanged=%s degraded=%s",
                self.run_id,
                security.code,
                outcome.inserted,
                outcome.updated,
                outcome.unchanged,
                ",".join(outcome.degraded_sources) or "-",
            )
        except HarvestError as exc:
            outcome.state = SecurityState.FAILED
            outcome.error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "security_failed run_id=%s code=%s error=%s", self.run_id, security.code, outcome.error
            )
        except Exception as exc:
            outcome.state = SecurityState.FAILED
            outcome.error = repr(exc)
            logger.exception(
                "security_failed run_id=%s code=%s error=%s", self.run_id, security.code, outcome.error
            )
        finally:
            outcome.elapsed_ms = int((time.monotonic() - t0) * 1000)
        return outcome
