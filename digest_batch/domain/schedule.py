"""
Pure schedule evaluation for the digest trigger.

Contract:
    ``should_fire(schedule, as_of)`` and ``compute_next_run()`` are PURE --
    no I/O, no side effects.  The scheduler passes the clock reading in.

Cron subset: five fields (minute hour day-of-month month day-of-week),
each a comma list of ``*``, ``N``, ``A-B`` with an optional ``/step``.
Day-of-week is 0-6 with 0 = Sunday.  As in standard cron, when both day
fields are restricted a day matching either one qualifies.

Architecture: digest_batch/domain.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NamedTuple

from digest_kernel.exceptions import InvalidCronExpressionError, ScheduleError

from digest_batch.domain.types import DigestSchedule, ScheduleFrequency

# Longest gap searched for the next cron match.
_SEARCH_HORIZON = timedelta(days=366)

_FIXED_INTERVALS = {
    ScheduleFrequency.HOURLY: timedelta(hours=1),
    ScheduleFrequency.DAILY: timedelta(days=1),
    ScheduleFrequency.WEEKLY: timedelta(weeks=1),
}


class CronField(NamedTuple):
    name: str
    low: int
    high: int

    @property
    def full(self) -> frozenset[int]:
        return frozenset(range(self.low, self.high + 1))


MINUTE = CronField("minute", 0, 59)
HOUR = CronField("hour", 0, 23)
DAY_OF_MONTH = CronField("day-of-month", 1, 31)
MONTH = CronField("month", 1, 12)
DAY_OF_WEEK = CronField("day-of-week", 0, 6)

_FIELDS = (MINUTE, HOUR, DAY_OF_MONTH, MONTH, DAY_OF_WEEK)


# =============================================================================
# Parsing
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """The admitted values of each cron field.  Defaults admit everything."""

    minutes: frozenset[int] = field(default_factory=lambda: MINUTE.full)
    hours: frozenset[int] = field(default_factory=lambda: HOUR.full)
    days_of_month: frozenset[int] = field(default_factory=lambda: DAY_OF_MONTH.full)
    months: frozenset[int] = field(default_factory=lambda: MONTH.full)
    days_of_week: frozenset[int] = field(default_factory=lambda: DAY_OF_WEEK.full)

    def matches_day(self, dt: datetime) -> bool:
        if dt.month not in self.months:
            return False
        cron_dow = (dt.weekday() + 1) % 7
        dom_ok = dt.day in self.days_of_month
        dow_ok = cron_dow in self.days_of_week
        if self.days_of_month != DAY_OF_MONTH.full and self.days_of_week != DAY_OF_WEEK.full:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and self.matches_day(dt)
        )


def _bounded(value: str, spec: CronField) -> int:
    number = int(value)
    if not spec.low <= number <= spec.high:
        raise ValueError(f"{spec.name} value {number} outside {spec.low}-{spec.high}")
    return number


def parse_cron_field(text: str, spec: CronField) -> frozenset[int]:
    """Values admitted by one cron field.

    Raises:
        ValueError: naming the field, for bad syntax or out-of-range values.
    """
    values: set[int] = set()
    for term in text.split(","):
        term = term.strip()
        body, _, step_text = term.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"{spec.name} step must be positive: {term!r}")

        if body == "*":
            start, end = spec.low, spec.high
        elif "-" in body:
            first, _, last = body.partition("-")
            start, end = _bounded(first, spec), _bounded(last, spec)
            if start > end:
                raise ValueError(f"{spec.name} range {term!r} runs backwards")
        else:
            start = _bounded(body, spec)
            end = spec.high if step_text else start

        values.update(range(start, end + 1, step))

    if not values:
        raise ValueError(f"{spec.name} field {text!r} admits no values")
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a five-field cron expression.

    Raises:
        InvalidCronExpressionError: If the expression is malformed.
    """
    parts = expression.split()
    if len(parts) != len(_FIELDS):
        raise InvalidCronExpressionError(
            expression, f"expected 5 fields, got {len(parts)}"
        )
    try:
        minutes, hours, days, months, weekdays = (
            parse_cron_field(text, spec) for text, spec in zip(parts, _FIELDS)
        )
    except ValueError as exc:
        raise InvalidCronExpressionError(expression, str(exc)) from exc
    return CronSpec(minutes, hours, days, months, weekdays)


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """True if ``dt`` falls on a minute the cron fields admit."""
    return spec.matches(dt)


# =============================================================================
# Schedule evaluation (pure)
# =============================================================================


def should_fire(schedule: DigestSchedule, as_of: datetime) -> bool:
    """Whether the digest is due at ``as_of``.

    Inactive and ON_DEMAND schedules never fire; ONCE fires until it has
    run.  With ``next_run_at`` known, the schedule is due from that instant
    on, so a late poll still fires.  Without one it is due immediately, or
    on a minute matching the cron expression when one is set.
    """
    if not schedule.is_active or schedule.frequency == ScheduleFrequency.ON_DEMAND:
        return False
    if schedule.frequency == ScheduleFrequency.ONCE:
        return schedule.last_run_at is None
    if schedule.next_run_at is not None:
        return as_of >= schedule.next_run_at
    if not schedule.cron_expression:
        return True
    try:
        return parse_cron(schedule.cron_expression).matches(as_of)
    except ScheduleError:
        return False


def compute_next_run(
    frequency: ScheduleFrequency,
    last_run_at: datetime | None,
    cron_expression: str | None = None,
) -> datetime | None:
    """Next due instant after ``last_run_at``.

    None for ON_DEMAND, ONCE, or a schedule that has never run.  A cron
    expression takes precedence over the fixed interval; an unusable one
    falls back to it.
    """
    if frequency not in _FIXED_INTERVALS or last_run_at is None:
        return None
    if cron_expression:
        try:
            return _next_cron_match(parse_cron(cron_expression), last_run_at)
        except ScheduleError:
            pass
    return last_run_at + _FIXED_INTERVALS[frequency]


def _next_cron_match(spec: CronSpec, after: datetime) -> datetime:
    """First matching minute strictly after ``after``.

    Skips whole days and hours that cannot match instead of testing every
    minute.

    Raises:
        InvalidCronExpressionError: If nothing matches within a year
            (e.g. ``0 0 30 2 *``).
    """
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    horizon = candidate + _SEARCH_HORIZON

    while candidate < horizon:
        if not spec.matches_day(candidate):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
        elif candidate.hour not in spec.hours:
            candidate = (candidate + timedelta(hours=1)).replace(minute=0)
        elif candidate.minute not in spec.minutes:
            candidate += timedelta(minutes=1)
        else:
            return candidate

    raise InvalidCronExpressionError(
        "<parsed>", f"no match within a year after {after.isoformat()}"
    )
