"""
Pytest fixtures for the digest test suite.

Provides:
- Structured logging configured once per session, plus log capture
- In-memory SQLite session factories for run-state tests
- Record builders shaped like the sales-order search results
"""

import json
import logging
from datetime import date, datetime, timezone
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from digest_kernel.db.base import Base
from digest_kernel.domain.clock import DeterministicClock
from digest_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

import digest_batch.models  # noqa: F401  (registers tables on Base.metadata)
from digest_batch.domain.types import RawRecord

RUN_DAY = date(2024, 3, 1)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture digest_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.run(RUN_DAY)
            logs = captured_logs()
            assert any(r["message"] == "run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("digest_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


# =============================================================================
# Clock and records
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc))


def make_record(
    record_id: str,
    rep: str | None = "A",
    amount: object = "100.00",
    supervisor: str | None = None,
    rep_name: str | None = None,
    customer: str = "Acme Hardware",
    trandate: str = "03/01/2024",
    tranid: str | None = None,
) -> RawRecord:
    """A raw record shaped like one sales-order search result row."""
    values: dict = {
        "internalid": [{"value": record_id, "text": record_id}],
        "entity": [{"value": "c-1", "text": customer}],
        "tranid": tranid or f"SO-{record_id}",
        "trandate": trandate,
        "amount": amount,
        "salesrep": (
            [{"value": rep, "text": rep_name or f"Rep {rep}"}] if rep is not None else []
        ),
        "salesRep.supervisor": (
            [{"value": supervisor, "text": f"Sup {supervisor}"}] if supervisor else []
        ),
    }
    return RawRecord(record_id=record_id, values=values)


@pytest.fixture
def record_factory():
    return make_record
