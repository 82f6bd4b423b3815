"""
Typed exception hierarchy for the digest pipeline.

Every exception carries a ``code`` class attribute (machine-readable,
log-safe) and stores its context as attributes, so the structured log
formatter can emit them as ``exc_*`` fields.

    DigestKernelError (base)
    |
    +-- SourceError
    |   +-- SourceUnavailableError      fatal to the Fetching state
    |
    +-- ExtractionError                 per-record, never unwinds a run
    |   +-- MissingFieldError
    |   +-- MalformedFieldError
    |
    +-- DispatchError                   per-group, never unwinds a run
    |
    +-- GroupingError
    |   +-- GroupingSealedError
    |
    +-- RunError
    |   +-- RunAlreadyRunningError
    |   +-- RunStateCorruptError
    |
    +-- ScheduleError
    |   +-- InvalidCronExpressionError
    |
    +-- ConfigError

Code            | Raised when
----------------|-----------------------------------------------------------
SOURCE_UNAVAILABLE | Record store unreachable or query rejected
MISSING_FIELD      | Required source field absent on a record
MALFORMED_FIELD    | Field present but not parseable (amount, date)
DISPATCH_FAILED    | Notification transport rejected a message
GROUPING_SEALED    | Fact emitted after the shuffle barrier
RUN_ALREADY_RUNNING| Second coordinator invocation for an active run
RUN_STATE_CORRUPT  | Persisted run state cannot be decoded
INVALID_CRON       | Cron expression is malformed
CONFIG_ERROR       | Configuration file missing keys or invalid values

Extraction and dispatch errors are raised inside one unit of work and
converted to failure results at the stage boundary; they are exceptions so
adapters can signal them, not so they can propagate.
"""


class DigestKernelError(Exception):
    """Base exception for all digest errors."""

    code: str = "DIGEST_KERNEL_ERROR"


# Source


class SourceError(DigestKernelError):
    """Base exception for record source errors."""

    code: str = "SOURCE_ERROR"


class SourceUnavailableError(SourceError):
    """The record source could not be reached or rejected the query."""

    code: str = "SOURCE_UNAVAILABLE"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Record source '{source}' unavailable: {reason}")


# Extraction


class ExtractionError(DigestKernelError):
    """Base exception for per-record extraction errors."""

    code: str = "EXTRACTION_ERROR"

    def __init__(self, record_id: str, message: str):
        self.record_id = record_id
        super().__init__(message)


class MissingFieldError(ExtractionError):
    """A required field is absent on a raw record."""

    code: str = "MISSING_FIELD"

    def __init__(self, record_id: str, field_name: str):
        self.field_name = field_name
        super().__init__(
            record_id, f"Record {record_id} is missing required field '{field_name}'"
        )


class MalformedFieldError(ExtractionError):
    """A field is present but cannot be parsed."""

    code: str = "MALFORMED_FIELD"

    def __init__(self, record_id: str, field_name: str, raw_value: object):
        self.field_name = field_name
        self.raw_value = repr(raw_value)
        super().__init__(
            record_id,
            f"Record {record_id} has malformed '{field_name}': {raw_value!r}",
        )


# Dispatch


class DispatchError(DigestKernelError):
    """The notification transport rejected a message."""

    code: str = "DISPATCH_FAILED"

    def __init__(self, group_key: str, reason: str):
        self.group_key = group_key
        self.reason = reason
        super().__init__(f"Dispatch for group {group_key} failed: {reason}")


# Grouping


class GroupingError(DigestKernelError):
    """Base exception for grouping engine errors."""

    code: str = "GROUPING_ERROR"


class GroupingSealedError(GroupingError):
    """A fact was emitted after the engine was partitioned."""

    code: str = "GROUPING_SEALED"

    def __init__(self, group_key: str):
        self.group_key = group_key
        super().__init__(
            f"Grouping engine is sealed; cannot accept fact for key {group_key}"
        )


# Run lifecycle


class RunError(DigestKernelError):
    """Base exception for run coordinator errors."""

    code: str = "RUN_ERROR"


class RunAlreadyRunningError(RunError):
    """Another coordinator invocation holds this run."""

    code: str = "RUN_ALREADY_RUNNING"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is already executing")


class RunStateCorruptError(RunError):
    """Persisted run state cannot be decoded."""

    code: str = "RUN_STATE_CORRUPT"

    def __init__(self, run_id: str, reason: str):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run state for {run_id} is corrupt: {reason}")


# Scheduling


class ScheduleError(DigestKernelError):
    """Base exception for schedule errors."""

    code: str = "SCHEDULE_ERROR"


class InvalidCronExpressionError(ScheduleError):
    """Cron expression could not be parsed."""

    code: str = "INVALID_CRON"

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression '{expression}': {reason}")


# Configuration


class ConfigError(DigestKernelError):
    """Configuration is missing required keys or holds invalid values."""

    code: str = "CONFIG_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration ({source}): {reason}")
