"""
digest_batch.domain -- Pure types, field parsing and schedule evaluation.

ZERO I/O.  All types are frozen dataclasses.
"""

from digest_batch.domain.fields import FieldMap, FieldRef
from digest_batch.domain.types import (
    PAGE_LIMIT,
    UNKNOWN_APPROVER,
    Addressing,
    DigestSchedule,
    DispatchReceipt,
    ExtractionOutcome,
    Fact,
    FactGroup,
    FailureKind,
    GroupSummary,
    Notification,
    RawRecord,
    ReduceOutcome,
    ReduceStatus,
    RunResult,
    RunStateSnapshot,
    RunStatus,
    ScheduleFrequency,
    Stage,
    SummaryRow,
    UnitFailure,
)

__all__ = [
    "PAGE_LIMIT",
    "UNKNOWN_APPROVER",
    "Addressing",
    "DigestSchedule",
    "DispatchReceipt",
    "ExtractionOutcome",
    "Fact",
    "FactGroup",
    "FailureKind",
    "FieldMap",
    "FieldRef",
    "GroupSummary",
    "Notification",
    "RawRecord",
    "ReduceOutcome",
    "ReduceStatus",
    "RunResult",
    "RunStateSnapshot",
    "RunStatus",
    "ScheduleFrequency",
    "Stage",
    "SummaryRow",
    "UnitFailure",
]
