"""
DigestScheduler -- In-process polling trigger for the daily digest.

Contract:
    Polls on a configurable interval, evaluates ``should_fire()`` (pure)
    against the current DigestSchedule and, when due, runs the coordinator
    for the clock's current day.

Architecture: digest_batch/services.  Uses digest_batch.domain.schedule
    for pure evaluation and digest_batch.services.coordinator for execution.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Schedule evaluation is pure (should_fire).
    - Graceful shutdown: the stop signal is honoured between ticks, and a
      run in progress is allowed to finish.
    - A day whose run ends FAILED or ABANDONED stays pending and is run
      again on every tick until it ends DONE or IDLE.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import date

from digest_kernel.domain.clock import Clock, SystemClock
from digest_kernel.exceptions import RunAlreadyRunningError
from digest_kernel.logging_config import get_logger

from digest_batch.domain.schedule import compute_next_run, should_fire
from digest_batch.domain.types import DigestSchedule, RunResult
from digest_batch.services.coordinator import RunCoordinator

logger = get_logger("batch.scheduler")


class DigestScheduler:
    """In-process polling scheduler for one digest schedule.

    Contract:
        - ``tick()`` evaluates the schedule and fires the run when due.
        - ``start()`` / ``stop()`` for background thread operation.
        - ``schedule`` exposes the latest DigestSchedule snapshot.
        - ``pending_days`` lists days still owed a finished run.

    Non-goals:
        - NOT a distributed scheduler (no leader election).
        - Does NOT handle timezone conversions; the clock decides the day.
    """

    def __init__(
        self,
        coordinator: RunCoordinator,
        schedule: DigestSchedule,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60,
    ):
        self._coordinator = coordinator
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_result: RunResult | None = None
        self._pending_days: list[date] = []

        if schedule.cron_expression and schedule.next_run_at is None:
            # Align the first run to the cron expression instead of firing now.
            schedule = dataclasses.replace(
                schedule,
                next_run_at=compute_next_run(
                    schedule.frequency, self._clock.now(), schedule.cron_expression,
                ),
            )
        self._schedule = schedule

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Retry unfinished days, then fire the schedule if due.

        Public for testing.  Returns the number of runs executed.
        """
        with self._lock:
            fired = self._retry_pending()

            now = self._clock.now()
            schedule = self._schedule
            if not should_fire(schedule, now):
                return fired

            run_day = self._clock.today()
            result = self._run(run_day, schedule.job_name)
            if result is None:
                return fired

            next_run = compute_next_run(
                frequency=schedule.frequency,
                last_run_at=now,
                cron_expression=schedule.cron_expression,
            )
            self._schedule = dataclasses.replace(
                schedule,
                last_run_at=now,
                last_run_status=result.status,
                next_run_at=next_run,
            )
            if result.status.needs_retry and run_day not in self._pending_days:
                self._pending_days.append(run_day)

        logger.info(
            "schedule_fired",
            extra={
                "job_name": schedule.job_name,
                "fired_run_id": result.run_id,
                "status": result.status.value,
                "next_run_at": next_run,
                "pending_days": len(self._pending_days),
            },
        )
        return fired + 1

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="digest-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``stop()`` is called; True if stopped."""
        return self._stop_event.wait(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def schedule(self) -> DigestSchedule:
        return self._schedule

    @property
    def last_result(self) -> RunResult | None:
        return self._last_result

    @property
    def pending_days(self) -> tuple[date, ...]:
        """Days whose last run ended FAILED or ABANDONED, oldest first."""
        return tuple(self._pending_days)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(self, run_day: date, job_name: str) -> RunResult | None:
        """Run the coordinator for one day; None if the run could not start."""
        try:
            result = self._coordinator.run(run_day)
        except RunAlreadyRunningError as exc:
            logger.warning("schedule_skipped_run_active", extra={"active_run": exc.run_id})
            return None
        except Exception:
            logger.exception("schedule_fire_failed", extra={"job_name": job_name})
            return None
        self._last_result = result
        return result

    def _retry_pending(self) -> int:
        """Run each day whose last run ended FAILED or ABANDONED again.

        A restart resumes an abandoned run from its saved state and
        re-fetches a failed one.  The day stays pending until a run for it
        ends DONE or IDLE.
        """
        fired = 0
        for run_day in list(self._pending_days):
            result = self._run(run_day, self._schedule.job_name)
            if result is None:
                continue
            fired += 1
            if result.status.needs_retry:
                logger.warning(
                    "pending_run_still_unfinished",
                    extra={"pending_run_day": run_day, "status": result.status.value},
                )
                continue
            self._pending_days.remove(run_day)
            logger.info(
                "pending_run_recovered",
                extra={"pending_run_day": run_day, "status": result.status.value},
            )
        return fired

    def _run_loop(self) -> None:
        """Background polling loop.  Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            # Wait for interval or until stopped
            self._stop_event.wait(timeout=self._tick_interval)
