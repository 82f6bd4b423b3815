"""
ErrorSink -- operator-visible record of stage-level failures.

Every fetch, extraction and dispatch failure is appended here and written
to the structured log with its stage, unit key, failure kind and message,
so a run can be diagnosed from the log alone.  Thread-safe; one sink per
coordinator invocation.
"""

from __future__ import annotations

import threading

from digest_kernel.logging_config import get_logger

from digest_batch.domain.types import Stage, UnitFailure

logger = get_logger("batch.errors")


class ErrorSink:
    def __init__(self, run_id: str | None = None) -> None:
        self._run_id = run_id
        self._lock = threading.Lock()
        self._failures: list[UnitFailure] = []

    def record(self, failure: UnitFailure) -> None:
        with self._lock:
            self._failures.append(failure)
        logger.error(
            "unit_failed",
            extra={
                "failed_run_id": self._run_id,
                "failed_stage": failure.stage.value,
                "failed_unit": failure.unit_key,
                "failure_kind": failure.kind.value,
                "failure_message": failure.message,
                "failure_field": failure.field_name,
            },
        )

    def failures(self, stage: Stage | None = None) -> tuple[UnitFailure, ...]:
        with self._lock:
            if stage is None:
                return tuple(self._failures)
            return tuple(f for f in self._failures if f.stage == stage)

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)
