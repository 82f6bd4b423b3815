"""
Tests for digest_batch.services.coordinator -- RunCoordinator.

End-to-end runs over in-memory sources and dispatchers: grouping, per-unit
failure isolation, replay suppression, restart without re-fetch / re-map /
re-dispatch, and the run timeout.
"""

import threading
from datetime import date
from decimal import Decimal

import pytest

from digest_kernel.exceptions import RunAlreadyRunningError

from digest_batch.adapters.dispatcher import InMemoryDispatcher
from digest_batch.adapters.source import InMemoryRecordSource
from digest_batch.domain.types import (
    UNKNOWN_APPROVER,
    DispatchReceipt,
    FailureKind,
    RawRecord,
    ReduceStatus,
    RunStatus,
    Stage,
)
from digest_batch.services.coordinator import RunCoordinator
from digest_batch.services.run_state import (
    InMemoryRunStateStore,
    RunState,
    SqlRunStateStore,
    run_key_for,
)
from digest_batch.stages.aggregator import GroupAggregator
from digest_batch.stages.extractor import FactExtractor

RUN_DAY = date(2024, 3, 1)
RUN_ID = run_key_for(RUN_DAY)


# =============================================================================
# Test collaborators
# =============================================================================


class CountingExtractor(FactExtractor):
    """Records which record ids were mapped."""

    def __init__(self, block_on: str | None = None, gate: threading.Event | None = None):
        super().__init__()
        self._lock = threading.Lock()
        self.seen: list[str] = []
        self._block_on = block_on
        self._gate = gate

    def extract(self, record):
        with self._lock:
            self.seen.append(record.record_id)
        if record.record_id == self._block_on:
            self._gate.wait(timeout=10)
        return super().extract(record)


class CrashingExtractor(FactExtractor):
    """Raises from the worker itself for one record id."""

    def __init__(self, crash_on: str):
        super().__init__()
        self._crash_on = crash_on

    def extract(self, record):
        if record.record_id == self._crash_on:
            raise RuntimeError("worker crashed")
        return super().extract(record)


class BlockingDispatcher:
    """Holds sends to ``block_for`` until ``gate`` is set."""

    def __init__(self, block_for: str):
        self.block_for = block_for
        self.gate = threading.Event()
        self.entered = threading.Event()
        self.sent: list[str] = []

    def send(self, notification):
        if notification.recipient_id == self.block_for:
            self.entered.set()
            self.gate.wait(timeout=10)
        self.sent.append(notification.recipient_id)
        return DispatchReceipt.ok(message_id=notification.idempotency_key)


def _coordinator(
    source,
    dispatcher,
    store=None,
    extractor=None,
    clock=None,
    **kwargs,
) -> RunCoordinator:
    return RunCoordinator(
        source=source,
        extractor=extractor or FactExtractor(),
        aggregator=GroupAggregator(dispatcher),
        store=store if store is not None else InMemoryRunStateStore(),
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def scenario_records(record_factory):
    """Records A, A, B: amounts 100, 50, 200; approvers S1, S1, absent."""
    return [
        record_factory("r1", rep="A", amount="100", supervisor="S1"),
        record_factory("r2", rep="A", amount="50", supervisor="S1"),
        record_factory("r3", rep="B", amount="200", supervisor=None),
    ]


@pytest.fixture
def source(scenario_records):
    return InMemoryRecordSource({RUN_DAY: scenario_records})


@pytest.fixture
def dispatcher():
    return InMemoryDispatcher()


@pytest.fixture
def store():
    return InMemoryRunStateStore()


def _by_key(result):
    return {o.group_key: o for o in result.outcomes}


# =============================================================================
# Happy path
# =============================================================================


class TestGroupedRun:
    def test_scenario_two_groups(self, source, dispatcher, store):
        result = _coordinator(source, dispatcher, store).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.fetched == 3
        assert result.facts == 3
        assert result.groups == 2
        assert result.dispatched == 2
        assert len(dispatcher.sent) == 2

        outcomes = _by_key(result)
        a, b = outcomes["A"].summary, outcomes["B"].summary
        assert a.approver_id == "S1"
        assert sorted(r.amount for r in a.rows) == [Decimal("50"), Decimal("100")]
        assert b.approver_id == UNKNOWN_APPROVER
        assert [r.amount for r in b.rows] == [Decimal("200")]

        recipients = {n.recipient_id for n in dispatcher.sent}
        assert recipients == {"S1", UNKNOWN_APPROVER}

    def test_one_notification_per_group(self, record_factory, dispatcher):
        records = [
            record_factory(f"r{i}", rep=f"R{i % 7}", supervisor="S") for i in range(60)
        ]
        result = _coordinator(
            InMemoryRecordSource({RUN_DAY: records}), dispatcher, map_workers=8,
        ).run(RUN_DAY)

        assert result.groups == 7
        assert len(dispatcher.attempts) == 7
        assert sum(len(o.summary.rows) for o in result.outcomes) == 60

    def test_grouping_independent_of_record_order(self, scenario_records):
        results = []
        for ordering in (scenario_records, list(reversed(scenario_records))):
            dispatcher = InMemoryDispatcher()
            result = _coordinator(
                InMemoryRecordSource({RUN_DAY: ordering}), dispatcher,
            ).run(RUN_DAY)
            results.append(
                {
                    o.group_key: sorted(r.document_id for r in o.summary.rows)
                    for o in result.outcomes
                }
            )
        assert results[0] == results[1]

    def test_default_run_day_from_clock(self, source, dispatcher, clock):
        result = _coordinator(source, dispatcher, clock=clock).run()
        assert result.run_day == RUN_DAY
        assert result.run_id == "digest-2024-03-01"
        assert result.started_at == clock.now()

    def test_duplicate_record_ids_dropped(self, record_factory, dispatcher, captured_logs):
        records = [record_factory("r1", rep="A"), record_factory("r1", rep="A")]
        result = _coordinator(InMemoryRecordSource({RUN_DAY: records}), dispatcher).run(RUN_DAY)

        assert result.fetched == 1
        assert result.facts == 1
        assert any(r["message"] == "duplicate_records_dropped" for r in captured_logs())


# =============================================================================
# Empty input and extraction failures
# =============================================================================


class TestIdleAndExtractionFailures:
    def test_zero_records_is_idle(self, dispatcher, store, captured_logs):
        result = _coordinator(InMemoryRecordSource(), dispatcher, store).run(RUN_DAY)

        assert result.status == RunStatus.IDLE
        assert result.facts == 0
        assert dispatcher.attempts == []
        assert store.load(RUN_ID) is None
        assert not [r for r in captured_logs() if r["level"] == "ERROR"]

    def test_missing_owner_is_failure_not_abort(self, record_factory, dispatcher):
        records = [record_factory("r1", rep=None), record_factory("r2", rep="A")]
        result = _coordinator(InMemoryRecordSource({RUN_DAY: records}), dispatcher).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.facts == 1
        assert [f.kind for f in result.extraction_failures] == [FailureKind.MISSING_OWNER]
        assert result.extraction_failures[0].unit_key == "r1"
        assert len(dispatcher.sent) == 1

    def test_only_missing_owner_yields_no_facts(self, record_factory, dispatcher):
        result = _coordinator(
            InMemoryRecordSource({RUN_DAY: [record_factory("r1", rep=None)]}), dispatcher,
        ).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.facts == 0
        assert result.groups == 0
        assert dispatcher.attempts == []

    def test_single_malformed_amount(self, record_factory, dispatcher):
        result = _coordinator(
            InMemoryRecordSource({RUN_DAY: [record_factory("r1", amount="abc")]}), dispatcher,
        ).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert len(result.extraction_failures) == 1
        assert result.extraction_failures[0].kind == FailureKind.MALFORMED_FIELD
        assert dispatcher.attempts == []
        assert result.error_summary == "1 unit(s) failed"

    def test_failures_are_logged_with_context(self, record_factory, dispatcher, captured_logs):
        _coordinator(
            InMemoryRecordSource({RUN_DAY: [record_factory("r1", amount="abc")]}), dispatcher,
        ).run(RUN_DAY)

        failed = [r for r in captured_logs() if r["message"] == "unit_failed"]
        assert len(failed) == 1
        assert failed[0]["failed_unit"] == "r1"
        assert failed[0]["failure_kind"] == "MALFORMED_FIELD"
        assert failed[0]["run_id"] == RUN_ID
        assert failed[0]["stage"] == "map"

    def test_groups_of_only_failed_records_are_not_dispatched(self, record_factory, dispatcher):
        records = [
            record_factory("r1", rep="A", amount="abc"),
            record_factory("r2", rep="B", amount="10"),
        ]
        result = _coordinator(InMemoryRecordSource({RUN_DAY: records}), dispatcher).run(RUN_DAY)

        assert {o.group_key for o in result.outcomes} == {"B"}
        assert [n.author_id for n in dispatcher.sent] == ["B"]


# =============================================================================
# Fetch and dispatch failures
# =============================================================================


class TestFailures:
    def test_source_unavailable_fails_run(self, dispatcher, store, captured_logs):
        result = _coordinator(
            InMemoryRecordSource(unavailable="connection refused"), dispatcher, store,
        ).run(RUN_DAY)

        assert result.status == RunStatus.FAILED
        assert "connection refused" in result.error_summary
        assert dispatcher.attempts == []
        assert store.load(RUN_ID) is None

        failed = [r for r in captured_logs() if r["message"] == "unit_failed"]
        assert failed[0]["failure_kind"] == "SOURCE_UNAVAILABLE"
        assert failed[0]["failed_stage"] == "fetch"

    def test_next_run_after_fetch_failure_refetches(self, scenario_records, dispatcher, store):
        source = InMemoryRecordSource({RUN_DAY: scenario_records}, unavailable="down")
        coordinator = _coordinator(source, dispatcher, store)
        assert coordinator.run(RUN_DAY).status == RunStatus.FAILED

        source.unavailable = None
        result = coordinator.run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert not result.resumed
        assert source.fetch_count == 2

    def test_dispatch_failure_isolated(self, source, store):
        dispatcher = InMemoryDispatcher(fail_for={"S1"})
        result = _coordinator(source, dispatcher, store).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.dispatched == 1
        assert [f.unit_key for f in result.dispatch_failures] == ["A"]
        assert result.dispatch_failures[0].stage == Stage.REDUCE
        assert _by_key(result)["A"].status == ReduceStatus.DISPATCH_FAILED
        assert _by_key(result)["B"].status == ReduceStatus.DISPATCHED
        assert store.load(RUN_ID).dispatched_group_keys == {"B"}

    def test_dispatch_crash_isolated(self, source):
        dispatcher = InMemoryDispatcher(raise_for={UNKNOWN_APPROVER})
        result = _coordinator(source, dispatcher).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.dispatched == 1
        assert result.dispatch_failures[0].kind == FailureKind.UNHANDLED_EXCEPTION

    def test_failed_group_retried_on_replay(self, source, store):
        dispatcher = InMemoryDispatcher(fail_for={"S1"})
        coordinator = _coordinator(source, dispatcher, store)
        coordinator.run(RUN_DAY)

        dispatcher.fail_for.clear()
        result = coordinator.run(RUN_DAY)

        assert result.dispatched == 1
        assert result.skipped == 1
        assert _by_key(result)["A"].status == ReduceStatus.DISPATCHED
        assert len(dispatcher.sent) == 2


# =============================================================================
# Replay and restart
# =============================================================================


class TestReplayAndRestart:
    def test_replay_sends_nothing_new(self, source, dispatcher, store):
        coordinator = _coordinator(source, dispatcher, store)
        first = coordinator.run(RUN_DAY)
        second = coordinator.run(RUN_DAY)

        assert first.dispatched == 2
        assert second.status == RunStatus.DONE
        assert second.resumed
        assert second.dispatched == 0
        assert second.skipped == 2
        assert len(dispatcher.attempts) == 2
        assert source.fetch_count == 1

    def test_replay_without_suppression_starts_over(self, source, dispatcher, store):
        coordinator = _coordinator(source, dispatcher, store, suppress_redispatch=False)
        coordinator.run(RUN_DAY)
        assert store.load(RUN_ID) is None

        second = coordinator.run(RUN_DAY)

        assert not second.resumed
        assert second.dispatched == 2
        assert source.fetch_count == 2
        assert len(dispatcher.attempts) == 4

    def test_restart_skips_fetch_map_and_dispatched_groups(
        self, scenario_records, source, dispatcher, store,
    ):
        # A previous attempt captured the records, mapped r1 and r2,
        # dispatched A, then died.
        extractor = FactExtractor()
        state = RunState.begin(RUN_ID, RUN_DAY, store)
        state.capture(tuple(scenario_records))
        state.transition(RunStatus.MAPPING)
        for record in scenario_records[:2]:
            state.record_mapped(record.record_id, fact=extractor.extract(record).fact)
        state.transition(RunStatus.REDUCING)
        state.record_dispatched("A")

        counting = CountingExtractor()
        result = _coordinator(source, dispatcher, store, extractor=counting).run(RUN_DAY)

        assert result.status == RunStatus.DONE
        assert result.resumed
        assert source.fetch_count == 0
        assert counting.seen == ["r3"]
        assert result.facts == 3
        assert _by_key(result)["A"].status == ReduceStatus.SKIPPED
        assert _by_key(result)["B"].status == ReduceStatus.DISPATCHED
        assert [n.recipient_id for n in dispatcher.sent] == [UNKNOWN_APPROVER]

    def test_restart_survives_new_process(self, source, session_factory, clock):
        dispatcher = InMemoryDispatcher()
        first = _coordinator(
            source, dispatcher, SqlRunStateStore(session_factory, clock=clock), clock=clock,
        ).run(RUN_DAY)

        # Fresh store object over the same database.
        second = _coordinator(
            source, dispatcher, SqlRunStateStore(session_factory, clock=clock), clock=clock,
        ).run(RUN_DAY)

        assert first.dispatched == 2
        assert second.dispatched == 0
        assert second.skipped == 2
        assert len(dispatcher.attempts) == 2

    def test_failed_extractions_not_retried_on_replay(self, record_factory, dispatcher, store):
        records = [record_factory("r1", amount="abc"), record_factory("r2")]
        counting = CountingExtractor()
        coordinator = _coordinator(
            InMemoryRecordSource({RUN_DAY: records}), dispatcher, store, extractor=counting,
        )
        coordinator.run(RUN_DAY)
        coordinator.run(RUN_DAY)

        assert sorted(counting.seen) == ["r1", "r2"]

    def test_unreadable_record_recorded_as_processed(self, record_factory, dispatcher, store):
        records = [
            RawRecord(record_id="r1", values=["not", "a", "mapping"]),
            record_factory("r2", rep="B"),
        ]
        counting = CountingExtractor()
        coordinator = _coordinator(
            InMemoryRecordSource({RUN_DAY: records}), dispatcher, store, extractor=counting,
        )
        result = coordinator.run(RUN_DAY)
        coordinator.run(RUN_DAY)

        assert [f.kind for f in result.extraction_failures] == [
            FailureKind.UNHANDLED_EXCEPTION
        ]
        assert store.load(RUN_ID).processed_record_ids == {"r1", "r2"}
        assert sorted(counting.seen) == ["r1", "r2"]

    def test_crashed_map_unit_retried_on_replay(self, record_factory, dispatcher, store):
        records = [record_factory("r1", rep="A"), record_factory("r2", rep="B")]
        source = InMemoryRecordSource({RUN_DAY: records})
        first = _coordinator(
            source, dispatcher, store, extractor=CrashingExtractor(crash_on="r1"),
        ).run(RUN_DAY)

        assert first.status == RunStatus.DONE
        assert first.extraction_failures[0].kind == FailureKind.UNHANDLED_EXCEPTION
        assert store.load(RUN_ID).processed_record_ids == {"r2"}

        replay = _coordinator(source, dispatcher, store).run(RUN_DAY)

        assert _by_key(replay)["A"].status == ReduceStatus.DISPATCHED
        assert _by_key(replay)["B"].status == ReduceStatus.SKIPPED
        assert sorted(n.author_id for n in dispatcher.sent) == ["A", "B"]


# =============================================================================
# Timeout and concurrency guard
# =============================================================================


class TestTimeout:
    def test_reduce_timeout_abandons_and_resumes(self, source, store):
        blocking = BlockingDispatcher(block_for="S1")
        result = _coordinator(
            source, blocking, store, reduce_workers=2, run_timeout_seconds=0.5,
        ).run(RUN_DAY)

        assert result.status == RunStatus.ABANDONED
        assert "timeout" in result.error_summary
        snapshot = store.load(RUN_ID)
        assert snapshot.status == RunStatus.ABANDONED
        assert snapshot.dispatched_group_keys == {"B"}

        # The held send completes after the run gave up; its success is not recorded.
        blocking.gate.set()

        dispatcher = InMemoryDispatcher()
        resumed = _coordinator(source, dispatcher, store).run(RUN_DAY)

        assert resumed.status == RunStatus.DONE
        assert resumed.resumed
        assert source.fetch_count == 1
        assert _by_key(resumed)["A"].status == ReduceStatus.DISPATCHED
        assert _by_key(resumed)["B"].status == ReduceStatus.SKIPPED

    def test_map_timeout_keeps_finished_records(self, source, dispatcher, store):
        gate = threading.Event()
        slow = CountingExtractor(block_on="r3", gate=gate)
        result = _coordinator(
            source, dispatcher, store, extractor=slow, map_workers=3, run_timeout_seconds=0.5,
        ).run(RUN_DAY)
        gate.set()

        assert result.status == RunStatus.ABANDONED
        assert dispatcher.attempts == []
        assert store.load(RUN_ID).processed_record_ids == {"r1", "r2"}

        counting = CountingExtractor()
        resumed = _coordinator(source, dispatcher, store, extractor=counting).run(RUN_DAY)

        assert resumed.status == RunStatus.DONE
        assert counting.seen == ["r3"]
        assert resumed.dispatched == 2


class TestConcurrencyGuard:
    def test_same_day_cannot_run_twice_at_once(self, source, store):
        blocking = BlockingDispatcher(block_for="S1")
        coordinator = _coordinator(source, blocking, store)
        results = []
        worker = threading.Thread(target=lambda: results.append(coordinator.run(RUN_DAY)))
        worker.start()
        try:
            assert blocking.entered.wait(timeout=5)
            with pytest.raises(RunAlreadyRunningError) as exc_info:
                coordinator.run(RUN_DAY)
            assert exc_info.value.run_id == RUN_ID
        finally:
            blocking.gate.set()
            worker.join(timeout=5)

        assert results[0].status == RunStatus.DONE

    def test_coordinators_sharing_a_store_are_guarded(self, source, store, dispatcher):
        blocking = BlockingDispatcher(block_for="S1")
        first = _coordinator(source, blocking, store)
        worker = threading.Thread(target=lambda: first.run(RUN_DAY))
        worker.start()
        try:
            assert blocking.entered.wait(timeout=5)
            with pytest.raises(RunAlreadyRunningError):
                _coordinator(source, dispatcher, store).run(RUN_DAY)
        finally:
            blocking.gate.set()
            worker.join(timeout=5)

    def test_separate_stores_do_not_block_each_other(self, scenario_records, dispatcher):
        blocking = BlockingDispatcher(block_for="S1")
        first = _coordinator(InMemoryRecordSource({RUN_DAY: scenario_records}), blocking)
        worker = threading.Thread(target=lambda: first.run(RUN_DAY))
        worker.start()
        try:
            assert blocking.entered.wait(timeout=5)
            other = _coordinator(InMemoryRecordSource({RUN_DAY: scenario_records}), dispatcher)
            result = other.run(RUN_DAY)
        finally:
            blocking.gate.set()
            worker.join(timeout=5)

        assert result.status == RunStatus.DONE
        assert result.dispatched == 2

    def test_invalid_pool_size_rejected(self, source, dispatcher):
        with pytest.raises(ValueError):
            _coordinator(source, dispatcher, map_workers=0)
