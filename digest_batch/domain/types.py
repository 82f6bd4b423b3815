"""
digest_batch.domain.types -- Pure frozen dataclasses for the digest pipeline.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - Every DTO is immutable once built; a run never mutates a Fact.
    - ``Fact.group_key == Fact.owner_id``.
    - A stage outcome carries either a value or a failure, never both.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

# Sentinel approver used when no fact in a group names one.  Matches the
# negative id the upstream record store uses for "no employee".
UNKNOWN_APPROVER = "-5"

# The record store caps a single fetch at this many rows.
PAGE_LIMIT = 1000


# =============================================================================
# Status enums
# =============================================================================


class RunStatus(str, Enum):
    """Run coordinator lifecycle."""

    FETCHING = "fetching"  # Initial; pulling the day's records
    IDLE = "idle"  # Terminal: zero records fetched
    MAPPING = "mapping"  # Extracting facts
    GROUPING = "grouping"  # Shuffle barrier
    REDUCING = "reducing"  # Aggregating and dispatching per group
    DONE = "done"  # Terminal: every non-empty group handed to the aggregator
    FAILED = "failed"  # Terminal: record source unavailable
    ABANDONED = "abandoned"  # Run timeout hit; resumable

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.IDLE, RunStatus.DONE, RunStatus.FAILED)

    @property
    def is_resumable(self) -> bool:
        return not self.is_terminal

    @property
    def needs_retry(self) -> bool:
        """The day still owes notifications: fetch failed or the run timed out."""
        return self in (RunStatus.FAILED, RunStatus.ABANDONED)


class Stage(str, Enum):
    """Pipeline stage a unit failure belongs to."""

    FETCH = "fetch"
    MAP = "map"
    REDUCE = "reduce"


class FailureKind(str, Enum):
    """Machine-readable failure kinds written to the error sink."""

    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    MISSING_OWNER = "MISSING_OWNER"
    MISSING_FIELD = "MISSING_FIELD"
    MALFORMED_FIELD = "MALFORMED_FIELD"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"


class ReduceStatus(str, Enum):
    """Outcome of reducing one group."""

    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    SKIPPED = "skipped"  # Already dispatched by an earlier attempt
    EMPTY = "empty"  # No facts; nothing to send


class Addressing(str, Enum):
    """Who receives a group's notification."""

    APPROVER = "approver"  # Owner writes to supervisor
    OWNER = "owner"  # Supervisor writes to owner


class ScheduleFrequency(str, Enum):
    """Recurrence frequency for the digest trigger."""

    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    ON_DEMAND = "on_demand"  # Manual trigger only


# =============================================================================
# Records and facts
# =============================================================================


@dataclass(frozen=True)
class RawRecord:
    """One source-defined transaction record, immutable once fetched."""

    record_id: str
    values: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"record_id": self.record_id, "values": _jsonable(dict(self.values))}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RawRecord:
        return cls(record_id=str(data["record_id"]), values=dict(data.get("values") or {}))


@dataclass(frozen=True)
class Fact:
    """Normalized projection of one raw record, tagged with its group key."""

    group_key: str
    record_id: str
    document_id: str
    counterparty_name: str
    occurred_on: date
    amount: Decimal
    owner_id: str
    owner_name: str
    approver_id: str | None = None
    link_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_key": self.group_key,
            "record_id": self.record_id,
            "document_id": self.document_id,
            "counterparty_name": self.counterparty_name,
            "occurred_on": self.occurred_on.isoformat(),
            "amount": str(self.amount),
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "approver_id": self.approver_id,
            "link_id": self.link_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Fact:
        return cls(
            group_key=data["group_key"],
            record_id=data["record_id"],
            document_id=data["document_id"],
            counterparty_name=data["counterparty_name"],
            occurred_on=date.fromisoformat(data["occurred_on"]),
            amount=Decimal(data["amount"]),
            owner_id=data["owner_id"],
            owner_name=data["owner_name"],
            approver_id=data.get("approver_id"),
            link_id=data.get("link_id"),
        )


@dataclass(frozen=True)
class FactGroup:
    """All facts sharing one group key.  Order carries no meaning."""

    group_key: str
    facts: tuple[Fact, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.facts

    def __len__(self) -> int:
        return len(self.facts)


# =============================================================================
# Summaries and notifications
# =============================================================================


@dataclass(frozen=True)
class SummaryRow:
    """Display shape of one fact inside a notification."""

    document_id: str
    counterparty_name: str
    occurred_on: date
    amount: Decimal
    document_link: str


@dataclass(frozen=True)
class GroupSummary:
    """Aggregated, dispatch-ready representation of one FactGroup."""

    group_key: str
    approver_id: str
    owner_name: str
    rows: tuple[SummaryRow, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum((row.amount for row in self.rows), Decimal("0"))

    @property
    def has_known_approver(self) -> bool:
        return self.approver_id != UNKNOWN_APPROVER


@dataclass(frozen=True)
class Notification:
    """One message handed to the dispatcher adapter.

    ``idempotency_key`` is ``"{group_key}:{run_day}"``; adapters that can
    deduplicate use it to make a resend harmless.
    """

    author_id: str
    recipient_id: str
    subject: str
    body: str
    idempotency_key: str


@dataclass(frozen=True)
class DispatchReceipt:
    """Result of ``Dispatcher.send()``: success or failure, never raised."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    duplicate: bool = False

    @classmethod
    def ok(cls, message_id: str | None = None, duplicate: bool = False) -> DispatchReceipt:
        return cls(success=True, message_id=message_id, duplicate=duplicate)

    @classmethod
    def failed(cls, error: str) -> DispatchReceipt:
        return cls(success=False, error=error)


# =============================================================================
# Unit outcomes
# =============================================================================


@dataclass(frozen=True)
class UnitFailure:
    """One stage-level failure, with enough context to diagnose offline."""

    stage: Stage
    unit_key: str  # record id, group key, or run id for fetch failures
    kind: FailureKind
    message: str
    field_name: str | None = None


@dataclass(frozen=True)
class ExtractionOutcome:
    """Map-stage result: exactly one of ``fact`` / ``failure`` is set."""

    record_id: str
    fact: Fact | None = None
    failure: UnitFailure | None = None

    @property
    def ok(self) -> bool:
        return self.fact is not None


@dataclass(frozen=True)
class ReduceOutcome:
    """Reduce-stage result for one group key."""

    group_key: str
    status: ReduceStatus
    summary: GroupSummary | None = None
    notification: Notification | None = None
    failure: UnitFailure | None = None


# =============================================================================
# Run results and persisted state
# =============================================================================


@dataclass(frozen=True)
class RunStateSnapshot:
    """Immutable copy of a run's restart state.

    ``records`` is None until the Fetching state has durably captured the
    day's records.  ``outcomes`` maps each processed record id to its
    Fact, or to None when extraction failed.
    """

    run_id: str
    run_day: date
    status: RunStatus
    records: tuple[RawRecord, ...] | None = None
    outcomes: Mapping[str, Fact | None] = field(default_factory=dict)
    dispatched_group_keys: frozenset[str] = frozenset()
    correlation_id: str | None = None

    @property
    def processed_record_ids(self) -> frozenset[str]:
        return frozenset(self.outcomes)


@dataclass(frozen=True)
class RunResult:
    """Immutable summary of one coordinator invocation."""

    run_id: str
    run_day: date
    status: RunStatus
    resumed: bool = False
    fetched: int = 0
    facts: int = 0
    groups: int = 0
    dispatched: int = 0
    skipped: int = 0
    extraction_failures: tuple[UnitFailure, ...] = ()
    dispatch_failures: tuple[UnitFailure, ...] = ()
    outcomes: tuple[ReduceOutcome, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    correlation_id: str | None = None
    error_summary: str | None = None


@dataclass(frozen=True)
class DigestSchedule:
    """Immutable snapshot of the digest trigger.

    ``should_fire`` reads ``next_run_at`` and the current clock with no
    side effects.
    """

    job_name: str
    frequency: ScheduleFrequency
    cron_expression: str | None = None
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None
    is_active: bool = True


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, date)):
        return value.isoformat() if isinstance(value, date) else str(value)
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
