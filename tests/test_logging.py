"""Tests for digest_kernel.logging_config: JSON lines, run context, setup."""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from digest_kernel.exceptions import SourceUnavailableError
from digest_kernel.logging_config import (
    LogContext,
    configure_logging,
    get_logger,
    reset_logging,
)

from digest_batch.domain.types import Stage


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


@pytest.fixture
def emitted():
    """Configure logging into a buffer; call the fixture to read the lines."""
    stream = StringIO()
    configure_logging(stream=stream)

    def _lines() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _lines


log = get_logger("test")


class TestJsonLines:
    def test_base_fields(self, emitted):
        log.info("run_completed")

        (line,) = emitted()
        assert line["level"] == "INFO"
        assert line["message"] == "run_completed"
        assert line["logger"] == "digest_kernel.test"
        assert line["ts"].endswith("+00:00")

    def test_extras_become_keys(self, emitted):
        log.info("group_dispatched", extra={"rows": 2, "group_key": "A"})

        (line,) = emitted()
        assert (line["rows"], line["group_key"]) == (2, "A")

    def test_typed_values(self, emitted):
        uid = uuid4()
        log.info(
            "typed_values",
            extra={
                "entry_id": uid,
                "day": date(2024, 3, 1),
                "total": Decimal("150.00"),
                "stage": Stage.MAP,
                "keys": {"B", "A"},
            },
        )

        (line,) = emitted()
        assert line["entry_id"] == str(uid)
        assert line["day"] == "2024-03-01"
        assert line["total"] == "150.00"
        assert line["stage"] == "map"
        assert line["keys"] == ["A", "B"]

    def test_default_level_drops_debug(self, emitted):
        log.debug("noise")
        log.warning("page_limit_reached", extra={"limit": 1000})

        assert [line["message"] for line in emitted()] == ["page_limit_reached"]

    def test_plain_exception(self, emitted):
        try:
            raise ValueError("boom")
        except ValueError:
            log.exception("unit_crashed")

        (line,) = emitted()
        assert line["exc_type"] == "ValueError"
        assert line["exc_message"] == "boom"
        assert "exc_code" not in line
        assert "Traceback" in line["traceback"]

    def test_kernel_exception_attributes(self, emitted):
        try:
            raise SourceUnavailableError("json:orders.json", "connection refused")
        except SourceUnavailableError:
            log.error("fetch_failed", exc_info=True)

        (line,) = emitted()
        assert line["exc_code"] == "SOURCE_UNAVAILABLE"
        assert line["exc_source"] == "json:orders.json"
        assert line["exc_reason"] == "connection refused"


class TestRunContext:
    def test_context_added_to_lines(self, emitted):
        LogContext.set(run_id="digest-2024-03-01", stage="map")
        log.info("record_mapped")

        (line,) = emitted()
        assert line["run_id"] == "digest-2024-03-01"
        assert line["stage"] == "map"
        assert "correlation_id" not in line

    def test_extra_does_not_override_context(self, emitted):
        with LogContext.bind(unit_key="r1"):
            log.info("record_mapped", extra={"unit_key": "other"})

        (line,) = emitted()
        assert line["unit_key"] == "r1"

    def test_set_get_clear(self):
        LogContext.set(correlation_id="x", run_id="y", stage=None)
        assert LogContext.get_all() == {"correlation_id": "x", "run_id": "y"}
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous_values(self):
        LogContext.set(stage="map")
        with LogContext.bind(stage="reduce", unit_key="A"):
            assert LogContext.get_all() == {"stage": "reduce", "unit_key": "A"}
        assert LogContext.get_all() == {"stage": "map"}

    def test_bind_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with LogContext.bind(run_id="digest-2024-03-01"):
                raise RuntimeError("boom")
        assert LogContext.get_all() == {}

    def test_bind_converts_dates_and_enums(self):
        with LogContext.bind(run_day=date(2024, 3, 1), stage=Stage.REDUCE):
            ctx = LogContext.get_all()
        assert ctx == {"run_day": "2024-03-01", "stage": "reduce"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="tenant"):
            LogContext.set(tenant="acme")


class TestConfigureLogging:
    def test_only_first_call_applies(self):
        first, second = StringIO(), StringIO()
        configure_logging(stream=first)
        configure_logging(stream=second)
        log.info("once")

        assert "once" in first.getvalue()
        assert second.getvalue() == ""
        assert len(logging.getLogger("digest_kernel").handlers) == 1

    def test_level_by_name(self):
        stream = StringIO()
        configure_logging(stream=stream, level="DEBUG")
        get_logger("deep.nested.module").debug("hierarchy_test")

        line = json.loads(stream.getvalue())
        assert line["logger"] == "digest_kernel.deep.nested.module"

    def test_custom_handler(self):
        records: list[logging.LogRecord] = []

        class ListHandler(logging.Handler):
            def emit(self, record):
                records.append(record)

        configure_logging(handler=ListHandler())
        log.info("handled")
        assert [r.getMessage() for r in records] == ["handled"]

    def test_reset_detaches_handler(self):
        configure_logging(stream=StringIO())
        reset_logging()
        root = logging.getLogger("digest_kernel")
        assert root.handlers == []
        assert root.propagate is True
