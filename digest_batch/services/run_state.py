"""
RunState and its stores.

Contract:
    ``RunState`` is the process-wide tracker for one run: captured records,
    per-record outcomes and dispatched group keys.  Every map and reduce
    worker writes to it; a single lock serialises those writes and each
    write goes through to the ``RunStateStore`` before the lock is
    released, so the store never loses an update.

    After ``close()`` (run timeout) further writes are dropped: an
    abandoned unit's completion stays unrecorded and is retried on restart.

Stores:
    - InMemoryRunStateStore: survives across invocations in one process.
    - SqlRunStateStore: SQLAlchemy-backed, survives process restarts.
"""

from __future__ import annotations

import threading
from datetime import date
from typing import Callable, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from digest_kernel.db.engine import session_scope
from digest_kernel.domain.clock import Clock, SystemClock
from digest_kernel.exceptions import RunStateCorruptError
from digest_kernel.logging_config import get_logger

from digest_batch.domain.types import (
    Fact,
    RawRecord,
    RunStateSnapshot,
    RunStatus,
    UnitFailure,
)
from digest_batch.models.run_state import (
    DigestRunGroupModel,
    DigestRunModel,
    DigestRunRecordModel,
)

logger = get_logger("batch.run_state")


def run_key_for(run_day: date) -> str:
    """Stable run id for a run day; the restart and idempotency key."""
    return f"digest-{run_day.isoformat()}"


# =============================================================================
# Store protocol
# =============================================================================


@runtime_checkable
class RunStateStore(Protocol):
    """Durable home of RunState.  Calls are serialised by RunState."""

    def load(self, run_id: str) -> RunStateSnapshot | None: ...

    def begin(self, run_id: str, run_day: date, correlation_id: str | None) -> None: ...

    def save_status(self, run_id: str, status: RunStatus) -> None: ...

    def save_records(self, run_id: str, records: tuple[RawRecord, ...]) -> None: ...

    def save_outcome(
        self, run_id: str, record_id: str, fact: Fact | None, failure: UnitFailure | None,
    ) -> None: ...

    def save_dispatched(self, run_id: str, group_key: str) -> None: ...

    def discard(self, run_id: str) -> None: ...


# =============================================================================
# RunState
# =============================================================================


class RunState:
    """Thread-safe restart state for one run."""

    def __init__(
        self,
        snapshot: RunStateSnapshot,
        store: RunStateStore,
    ) -> None:
        self._lock = threading.Lock()
        self._store = store
        self.run_id = snapshot.run_id
        self.run_day = snapshot.run_day
        self.correlation_id = snapshot.correlation_id
        self._status = snapshot.status
        self._records = snapshot.records
        self._outcomes: dict[str, Fact | None] = dict(snapshot.outcomes)
        self._dispatched: set[str] = set(snapshot.dispatched_group_keys)
        self._closed = False

    @classmethod
    def begin(
        cls,
        run_id: str,
        run_day: date,
        store: RunStateStore,
        correlation_id: str | None = None,
    ) -> RunState:
        """Start fresh state for a run and persist the empty shell."""
        store.begin(run_id, run_day, correlation_id)
        return cls(
            RunStateSnapshot(
                run_id=run_id,
                run_day=run_day,
                status=RunStatus.FETCHING,
                correlation_id=correlation_id,
            ),
            store,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def records(self) -> tuple[RawRecord, ...] | None:
        return self._records

    @property
    def closed(self) -> bool:
        return self._closed

    def is_processed(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._outcomes

    def is_dispatched(self, group_key: str) -> bool:
        with self._lock:
            return group_key in self._dispatched

    def pending_records(self) -> tuple[RawRecord, ...]:
        """Captured records with no recorded outcome yet."""
        with self._lock:
            return tuple(r for r in self._records or () if r.record_id not in self._outcomes)

    def facts(self) -> tuple[Fact, ...]:
        """Facts from records already processed (restart seed)."""
        with self._lock:
            return tuple(f for f in self._outcomes.values() if f is not None)

    @property
    def dispatched_group_keys(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._dispatched)

    def snapshot(self) -> RunStateSnapshot:
        with self._lock:
            return RunStateSnapshot(
                run_id=self.run_id,
                run_day=self.run_day,
                status=self._status,
                records=self._records,
                outcomes=dict(self._outcomes),
                dispatched_group_keys=frozenset(self._dispatched),
                correlation_id=self.correlation_id,
            )

    # -------------------------------------------------------------------------
    # Writes (serialised, written through)
    # -------------------------------------------------------------------------

    def transition(self, status: RunStatus) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._store.save_status(self.run_id, status)
            previous, self._status = self._status, status
        logger.info(
            "run_transition",
            extra={"from_status": previous.value, "to_status": status.value},
        )
        return True

    def capture(self, records: tuple[RawRecord, ...]) -> None:
        with self._lock:
            if self._closed:
                return
            self._store.save_records(self.run_id, records)
            self._records = records

    def record_mapped(
        self,
        record_id: str,
        fact: Fact | None = None,
        failure: UnitFailure | None = None,
    ) -> bool:
        """Record one map outcome.  False if dropped (closed or duplicate)."""
        with self._lock:
            if self._closed or record_id in self._outcomes:
                return False
            self._store.save_outcome(self.run_id, record_id, fact, failure)
            self._outcomes[record_id] = fact
            return True

    def record_dispatched(self, group_key: str) -> bool:
        """Record a successful dispatch.  False if dropped (closed or duplicate)."""
        with self._lock:
            if self._closed or group_key in self._dispatched:
                return False
            self._store.save_dispatched(self.run_id, group_key)
            self._dispatched.add(group_key)
            return True

    def close(self, final_status: RunStatus | None = None) -> None:
        """Stop accepting writes, optionally persisting a last status."""
        with self._lock:
            if self._closed:
                return
            if final_status is not None:
                self._store.save_status(self.run_id, final_status)
                self._status = final_status
            self._closed = True


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryRunStateStore:
    """Keeps snapshots in a dict; state survives only within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, dict] = {}

    def load(self, run_id: str) -> RunStateSnapshot | None:
        with self._lock:
            row = self._runs.get(run_id)
            if row is None:
                return None
            return RunStateSnapshot(
                run_id=run_id,
                run_day=row["run_day"],
                status=row["status"],
                records=row["records"],
                outcomes=dict(row["outcomes"]),
                dispatched_group_keys=frozenset(row["dispatched"]),
                correlation_id=row["correlation_id"],
            )

    def begin(self, run_id: str, run_day: date, correlation_id: str | None) -> None:
        with self._lock:
            self._runs[run_id] = {
                "run_day": run_day,
                "status": RunStatus.FETCHING,
                "records": None,
                "outcomes": {},
                "dispatched": set(),
                "correlation_id": correlation_id,
            }

    def save_status(self, run_id: str, status: RunStatus) -> None:
        with self._lock:
            self._runs[run_id]["status"] = status

    def save_records(self, run_id: str, records: tuple[RawRecord, ...]) -> None:
        with self._lock:
            self._runs[run_id]["records"] = tuple(records)

    def save_outcome(
        self, run_id: str, record_id: str, fact: Fact | None, failure: UnitFailure | None,
    ) -> None:
        with self._lock:
            self._runs[run_id]["outcomes"][record_id] = fact

    def save_dispatched(self, run_id: str, group_key: str) -> None:
        with self._lock:
            self._runs[run_id]["dispatched"].add(group_key)

    def discard(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._runs


# =============================================================================
# SQL store
# =============================================================================


class SqlRunStateStore:
    """SQLAlchemy-backed store; one short transaction per write.

    Args:
        session_factory: Callable returning new sessions (a ``sessionmaker``).
        clock: Stamps ``updated_at`` / ``dispatched_at``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def _run(self, session: Session, run_id: str) -> DigestRunModel:
        model = session.execute(
            select(DigestRunModel).where(DigestRunModel.run_key == run_id)
        ).scalar_one_or_none()
        if model is None:
            raise RunStateCorruptError(run_id, "no state row")
        return model

    def load(self, run_id: str) -> RunStateSnapshot | None:
        with session_scope(self._session_factory) as session:
            model = session.execute(
                select(DigestRunModel)
                .where(DigestRunModel.run_key == run_id)
                .options(
                    selectinload(DigestRunModel.records),
                    selectinload(DigestRunModel.groups),
                )
            ).scalar_one_or_none()
            if model is None:
                return None
            try:
                records = None
                if model.records_captured:
                    records = tuple(RawRecord.from_dict(r.payload) for r in model.records)
                outcomes: dict[str, Fact | None] = {}
                for r in model.records:
                    if r.outcome == "fact":
                        outcomes[r.record_id] = Fact.from_dict(r.fact or {})
                    elif r.outcome == "failed":
                        outcomes[r.record_id] = None
                return RunStateSnapshot(
                    run_id=run_id,
                    run_day=model.run_day,
                    status=RunStatus(model.status),
                    records=records,
                    outcomes=outcomes,
                    dispatched_group_keys=frozenset(g.group_key for g in model.groups),
                    correlation_id=model.correlation_id,
                )
            except (KeyError, ValueError, TypeError, ArithmeticError) as exc:
                raise RunStateCorruptError(run_id, f"{type(exc).__name__}: {exc}") from exc

    def begin(self, run_id: str, run_day: date, correlation_id: str | None) -> None:
        with session_scope(self._session_factory) as session:
            stale = session.execute(
                select(DigestRunModel).where(DigestRunModel.run_key == run_id)
            ).scalar_one_or_none()
            if stale is not None:
                session.delete(stale)
                session.flush()
            session.add(
                DigestRunModel(
                    run_key=run_id,
                    run_day=run_day,
                    status=RunStatus.FETCHING.value,
                    correlation_id=correlation_id,
                    updated_at=self._clock.now(),
                )
            )

    def save_status(self, run_id: str, status: RunStatus) -> None:
        with session_scope(self._session_factory) as session:
            model = self._run(session, run_id)
            model.status = status.value
            model.updated_at = self._clock.now()

    def save_records(self, run_id: str, records: tuple[RawRecord, ...]) -> None:
        with session_scope(self._session_factory) as session:
            model = self._run(session, run_id)
            for position, record in enumerate(records):
                session.add(
                    DigestRunRecordModel(
                        run_id=model.id,
                        position=position,
                        record_id=record.record_id,
                        payload=record.to_dict(),
                    )
                )
            model.records_captured = True
            model.updated_at = self._clock.now()

    def save_outcome(
        self, run_id: str, record_id: str, fact: Fact | None, failure: UnitFailure | None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            model = self._run(session, run_id)
            row = session.execute(
                select(DigestRunRecordModel).where(
                    DigestRunRecordModel.run_id == model.id,
                    DigestRunRecordModel.record_id == record_id,
                )
            ).scalar_one_or_none()
            if row is None:
                raise RunStateCorruptError(run_id, f"record {record_id} was never captured")
            if fact is not None:
                row.outcome = "fact"
                row.fact = fact.to_dict()
            else:
                row.outcome = "failed"
                row.failure_kind = failure.kind.value if failure else None
                row.failure_message = failure.message if failure else None

    def save_dispatched(self, run_id: str, group_key: str) -> None:
        with session_scope(self._session_factory) as session:
            model = self._run(session, run_id)
            session.add(
                DigestRunGroupModel(
                    run_id=model.id,
                    group_key=group_key,
                    dispatched_at=self._clock.now(),
                )
            )

    def discard(self, run_id: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                model = session.execute(
                    select(DigestRunModel).where(DigestRunModel.run_key == run_id)
                ).scalar_one_or_none()
                if model is not None:
                    session.delete(model)
        except SQLAlchemyError:
            logger.exception("run_state_discard_failed", extra={"discard_run_id": run_id})
            raise
