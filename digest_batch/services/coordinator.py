"""
RunCoordinator -- sequences one digest run.

Contract:
    ``run(run_day)`` drives the state machine

        FETCHING -> IDLE                                   (zero records)
        FETCHING -> MAPPING -> GROUPING -> REDUCING -> DONE
        FETCHING -> FAILED                                 (source unavailable)
        any non-terminal -> ABANDONED                      (run timeout)

    and returns a RunResult.  Per-unit failures (a bad record, a rejected
    notification) are written to the ErrorSink and never abort the run.

Architecture: digest_batch/services.  Imports from digest_batch.domain,
    digest_batch.stages, digest_batch.adapters and kernel infrastructure.

Invariants enforced:
    - Map and reduce run on worker pools; reduce starts only after every
      map unit has finished (shuffle barrier).
    - One reduce unit per group key, so no key is aggregated concurrently.
    - Restart: captured records are reused (no re-fetch), processed
      records are not re-mapped, dispatched groups are not re-dispatched.
    - All timestamps from the injected Clock.
    - One active invocation per run id and run-state store within the
      process.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import date
from typing import Any, Callable, Iterable
from uuid import uuid4

from digest_kernel.domain.clock import Clock, SystemClock
from digest_kernel.exceptions import RunAlreadyRunningError, SourceUnavailableError
from digest_kernel.logging_config import LogContext, get_logger

from digest_batch.adapters.source import RecordSource
from digest_batch.domain.types import (
    PAGE_LIMIT,
    FactGroup,
    FailureKind,
    RawRecord,
    ReduceOutcome,
    ReduceStatus,
    RunResult,
    RunStatus,
    Stage,
    UnitFailure,
)
from digest_batch.services.error_sink import ErrorSink
from digest_batch.services.run_state import (
    InMemoryRunStateStore,
    RunState,
    RunStateStore,
    run_key_for,
)
from digest_batch.stages.aggregator import GroupAggregator
from digest_batch.stages.extractor import FactExtractor
from digest_batch.stages.grouping import GroupingEngine

logger = get_logger("batch.coordinator")


class RunCoordinator:
    """Fetch, map, shuffle and reduce one run day.

    Contract:
        - ``run()`` is safe to call again for the same day: an unfinished
          run resumes, a finished run is replayed without duplicate sends.
        - ``suppress_redispatch`` keeps a DONE run's state so a replay
          finds every delivered group already recorded.  With it off the
          state is discarded on DONE and a replay starts over.

    Non-goals:
        - Does NOT retry a failed unit inside the run.
        - Does NOT manage background threads; that is the scheduler's job.
    """

    # (id of the run-state store, run id) for every run executing in this process.
    _active_runs: set[tuple[int, str]] = set()
    _active_lock = threading.Lock()

    def __init__(
        self,
        source: RecordSource,
        extractor: FactExtractor,
        aggregator: GroupAggregator,
        store: RunStateStore | None = None,
        clock: Clock | None = None,
        map_workers: int = 8,
        reduce_workers: int = 4,
        run_timeout_seconds: float | None = None,
        suppress_redispatch: bool = True,
    ):
        if map_workers < 1 or reduce_workers < 1:
            raise ValueError("worker pool sizes must be at least 1")
        if run_timeout_seconds is not None and run_timeout_seconds <= 0:
            raise ValueError("run_timeout_seconds must be positive")
        self._source = source
        self._extractor = extractor
        self._aggregator = aggregator
        self._store = store if store is not None else InMemoryRunStateStore()
        self._clock = clock or SystemClock()
        self._map_workers = map_workers
        self._reduce_workers = reduce_workers
        self._run_timeout = run_timeout_seconds
        self._suppress_redispatch = suppress_redispatch

    @property
    def store(self) -> RunStateStore:
        return self._store

    @property
    def clock(self) -> Clock:
        return self._clock

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, run_day: date | None = None) -> RunResult:
        """Execute (or resume) the run for ``run_day`` (default: today).

        Raises:
            RunAlreadyRunningError: If the same run day is already
                executing against the same store in this process.
        """
        run_day = run_day or self._clock.today()
        run_id = run_key_for(run_day)

        guard_key = (id(self._store), run_id)
        with self._active_lock:
            if guard_key in self._active_runs:
                raise RunAlreadyRunningError(run_id)
            self._active_runs.add(guard_key)

        correlation_id = str(uuid4())
        try:
            with LogContext.bind(
                run_id=run_id,
                run_day=run_day.isoformat(),
                correlation_id=correlation_id,
            ):
                return self._execute(run_id, run_day, correlation_id)
        finally:
            with self._active_lock:
                self._active_runs.discard(guard_key)

    def _execute(self, run_id: str, run_day: date, correlation_id: str) -> RunResult:
        start_time = time.monotonic()
        started_at = self._clock.now()
        deadline = start_time + self._run_timeout if self._run_timeout else None
        sink = ErrorSink(run_id)

        state, resumed = self._open_state(run_id, run_day, correlation_id)

        def result(status: RunStatus, **counts: Any) -> RunResult:
            return RunResult(
                run_id=run_id,
                run_day=run_day,
                status=status,
                resumed=resumed,
                extraction_failures=sink.failures(Stage.MAP),
                dispatch_failures=sink.failures(Stage.REDUCE),
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=int((time.monotonic() - start_time) * 1000),
                correlation_id=correlation_id,
                **counts,
            )

        # --- Fetching -------------------------------------------------------
        if state.records is None:
            failure = self._fetch(state, run_day)
            if failure is not None:
                sink.record(failure)
                state.close(RunStatus.FAILED)
                self._store.discard(run_id)
                logger.warning("run_failed", extra={"reason": failure.message})
                return result(RunStatus.FAILED, error_summary=failure.message)

        records = state.records or ()
        if not records:
            state.close(RunStatus.IDLE)
            self._store.discard(run_id)
            logger.info("run_idle")
            return result(RunStatus.IDLE)

        # --- Mapping --------------------------------------------------------
        state.transition(RunStatus.MAPPING)
        engine = GroupingEngine()
        engine.emit_many(state.facts())
        pending = state.pending_records()
        logger.info(
            "map_started",
            extra={"records": len(records), "pending": len(pending)},
        )

        futures, completed = self._fan_out(
            Stage.MAP,
            self._map_workers,
            ((r.record_id, r) for r in pending),
            lambda record: self._map_unit(record, engine, state, sink, run_day),
            deadline,
        )
        if not completed:
            return self._abandon(state, result, Stage.MAP, fetched=len(records))
        self._collect_crashes(futures, Stage.MAP, sink)

        # --- Grouping -------------------------------------------------------
        state.transition(RunStatus.GROUPING)
        groups = engine.partition()
        logger.info(
            "groups_partitioned",
            extra={"facts": engine.fact_count, "groups": len(groups)},
        )

        # --- Reducing -------------------------------------------------------
        state.transition(RunStatus.REDUCING)
        outcomes: dict[str, ReduceOutcome] = {}
        to_reduce: list[FactGroup] = []
        for group in groups:
            if state.is_dispatched(group.group_key):
                outcomes[group.group_key] = ReduceOutcome(
                    group_key=group.group_key, status=ReduceStatus.SKIPPED,
                )
            else:
                to_reduce.append(group)
        if outcomes:
            logger.info("groups_already_dispatched", extra={"skipped": len(outcomes)})

        futures, completed = self._fan_out(
            Stage.REDUCE,
            self._reduce_workers,
            ((g.group_key, g) for g in to_reduce),
            lambda group: self._reduce_unit(group, state, sink, run_day),
            deadline,
        )
        if not completed:
            return self._abandon(
                state, result, Stage.REDUCE,
                fetched=len(records), facts=engine.fact_count, groups=len(groups),
            )
        for crash in self._collect_crashes(futures, Stage.REDUCE, sink):
            outcomes[crash.unit_key] = ReduceOutcome(
                group_key=crash.unit_key,
                status=ReduceStatus.DISPATCH_FAILED,
                failure=crash,
            )
        for future in futures:
            if future.exception() is None:
                outcome = future.result()
                outcomes[outcome.group_key] = outcome

        # --- Done -----------------------------------------------------------
        state.close(RunStatus.DONE)
        if not self._suppress_redispatch:
            self._store.discard(run_id)

        ordered = tuple(outcomes[g.group_key] for g in groups if g.group_key in outcomes)
        dispatched = sum(1 for o in ordered if o.status == ReduceStatus.DISPATCHED)
        skipped = sum(1 for o in ordered if o.status == ReduceStatus.SKIPPED)
        failed = len(sink)

        logger.info(
            "run_completed",
            extra={
                "fetched": len(records),
                "facts": engine.fact_count,
                "groups": len(groups),
                "dispatched": dispatched,
                "skipped": skipped,
                "failures": failed,
            },
        )
        return result(
            RunStatus.DONE,
            fetched=len(records),
            facts=engine.fact_count,
            groups=len(groups),
            dispatched=dispatched,
            skipped=skipped,
            outcomes=ordered,
            error_summary=f"{failed} unit(s) failed" if failed else None,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _open_state(
        self, run_id: str, run_day: date, correlation_id: str,
    ) -> tuple[RunState, bool]:
        snapshot = self._store.load(run_id)
        if snapshot is not None:
            replay = snapshot.status == RunStatus.DONE and self._suppress_redispatch
            if snapshot.status.is_resumable or replay:
                logger.info(
                    "run_resumed",
                    extra={
                        "previous_status": snapshot.status.value,
                        "processed": len(snapshot.processed_record_ids),
                        "already_dispatched": len(snapshot.dispatched_group_keys),
                        "previous_correlation_id": snapshot.correlation_id,
                    },
                )
                return RunState(snapshot, self._store), True

        return RunState.begin(run_id, run_day, self._store, correlation_id), False

    def _fetch(self, state: RunState, run_day: date) -> UnitFailure | None:
        """Capture the day's records into state; a failure on error."""
        with LogContext.bind(stage=Stage.FETCH.value):
            try:
                fetched = self._source.fetch_daily_records(run_day)
            except SourceUnavailableError as exc:
                return UnitFailure(
                    stage=Stage.FETCH,
                    unit_key=state.run_id,
                    kind=FailureKind.SOURCE_UNAVAILABLE,
                    message=str(exc),
                )
            except Exception as exc:
                return UnitFailure(
                    stage=Stage.FETCH,
                    unit_key=state.run_id,
                    kind=FailureKind.UNHANDLED_EXCEPTION,
                    message=f"{type(exc).__name__}: {exc}",
                )

            records = _dedupe(fetched)
            if len(records) != len(fetched):
                logger.warning(
                    "duplicate_records_dropped",
                    extra={"dropped": len(fetched) - len(records)},
                )
            if len(fetched) >= PAGE_LIMIT:
                logger.warning(
                    "page_limit_reached",
                    extra={"limit": PAGE_LIMIT, "source": self._source.name},
                )
            state.capture(records)
            logger.info(
                "records_fetched",
                extra={"fetched": len(records), "source": self._source.name},
            )
            return None

    def _abandon(
        self,
        state: RunState,
        result: Callable[..., RunResult],
        stage: Stage,
        **counts: int,
    ) -> RunResult:
        state.close(RunStatus.ABANDONED)
        logger.warning(
            "run_abandoned",
            extra={"timeout_seconds": self._run_timeout, "abandoned_stage": stage.value},
        )
        return result(
            RunStatus.ABANDONED,
            error_summary=f"run timeout after {self._run_timeout}s during {stage.value}",
            **counts,
        )

    # -------------------------------------------------------------------------
    # Units
    # -------------------------------------------------------------------------

    def _map_unit(
        self,
        record: RawRecord,
        engine: GroupingEngine,
        state: RunState,
        sink: ErrorSink,
        run_day: date,
    ) -> None:
        with LogContext.bind(
            run_id=state.run_id,
            run_day=run_day.isoformat(),
            correlation_id=state.correlation_id,
            stage=Stage.MAP.value,
            unit_key=record.record_id,
        ):
            outcome = self._extractor.extract(record)
            if outcome.fact is not None:
                if state.record_mapped(record.record_id, fact=outcome.fact):
                    engine.emit(outcome.fact.group_key, outcome.fact)
            elif state.record_mapped(record.record_id, failure=outcome.failure):
                sink.record(outcome.failure)

    def _reduce_unit(
        self,
        group: FactGroup,
        state: RunState,
        sink: ErrorSink,
        run_day: date,
    ) -> ReduceOutcome:
        with LogContext.bind(
            run_id=state.run_id,
            run_day=run_day.isoformat(),
            correlation_id=state.correlation_id,
            stage=Stage.REDUCE.value,
            unit_key=group.group_key,
        ):
            outcome = self._aggregator.reduce(group, run_day, error_sink=sink)
            if outcome.status == ReduceStatus.DISPATCHED:
                state.record_dispatched(group.group_key)
            return outcome

    # -------------------------------------------------------------------------
    # Worker pools
    # -------------------------------------------------------------------------

    def _fan_out(
        self,
        stage: Stage,
        workers: int,
        units: Iterable[tuple[str, Any]],
        task: Callable[[Any], Any],
        deadline: float | None,
    ) -> tuple[dict[Future, str], bool]:
        """Run ``task`` over every unit; False if the deadline passed first.

        On timeout the pool is shut down without waiting and queued units
        are cancelled.  Units already running finish in the background.
        """
        units = list(units)
        if not units:
            return {}, True

        pool = ThreadPoolExecutor(
            max_workers=min(workers, len(units)),
            thread_name_prefix=f"digest-{stage.value}",
        )
        completed = False
        try:
            futures = {pool.submit(task, unit): key for key, unit in units}
            _, not_done = wait(futures, timeout=self._remaining(deadline))
            completed = not not_done
        finally:
            pool.shutdown(wait=completed, cancel_futures=not completed)
        return futures, completed

    @staticmethod
    def _collect_crashes(
        futures: dict[Future, str], stage: Stage, sink: ErrorSink,
    ) -> list[UnitFailure]:
        """Record units whose worker raised.  They stay unprocessed."""
        crashes = []
        for future, unit_key in futures.items():
            exc = future.exception()
            if exc is None:
                continue
            failure = UnitFailure(
                stage=stage,
                unit_key=unit_key,
                kind=FailureKind.UNHANDLED_EXCEPTION,
                message=f"{type(exc).__name__}: {exc}",
            )
            sink.record(failure)
            crashes.append(failure)
        return crashes

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())


def _dedupe(records: Iterable[RawRecord]) -> tuple[RawRecord, ...]:
    """Drop repeated record ids, keeping the first occurrence."""
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.record_id in seen:
            continue
        seen.add(record.record_id)
        unique.append(record)
    return tuple(unique)
