"""
Tests for digest_kernel.db.engine.

Validates engine initialization, the session factory guard, and
session_scope commit / rollback behaviour.
"""

from datetime import date

import pytest
from sqlalchemy import select

from digest_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

from digest_batch.models import DigestRunModel


@pytest.fixture(autouse=True)
def _reset_engine():
    reset_engine()
    yield
    reset_engine()


def _run(run_key: str = "digest-2024-03-01") -> DigestRunModel:
    return DigestRunModel(run_key=run_key, run_day=date(2024, 3, 1), status="MAPPING")


class TestEngineLifecycle:
    def test_not_initialized_raises(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            get_engine()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_session_factory()

    def test_memory_engine_shared_across_sessions(self):
        engine = init_engine_from_url("sqlite:///:memory:")
        create_tables(engine)
        assert get_engine() is engine

        with session_scope(get_session_factory()) as session:
            session.add(_run())

        with session_scope() as session:
            found = session.scalars(select(DigestRunModel)).all()
            assert [r.run_key for r in found] == ["digest-2024-03-01"]


class TestSessionScope:
    def test_rollback_on_exception(self):
        init_engine_from_url("sqlite:///:memory:")
        create_tables()

        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(_run())
                session.flush()
                raise RuntimeError("boom")

        with session_scope() as session:
            assert session.scalars(select(DigestRunModel)).all() == []
