"""
ORM models for durable run state.

Contract:
    DigestRunModel, DigestRunRecordModel and DigestRunGroupModel persist
    ``{run_id, processed record ids, dispatched group keys}`` plus the
    captured records and the facts derived from them, so a restarted run
    neither re-fetches, re-maps nor re-dispatches.

Architecture: digest_batch/models.  Imports from digest_kernel.db.base only.

Invariants enforced:
    - ``run_key`` is UNIQUE: one state row per run day.
    - (run, record_id) and (run, group_key) are UNIQUE: a record is
      processed once, a group dispatched once.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from digest_kernel.db.base import Base, UUIDString


class DigestRunModel(Base):
    """One run day's restart state."""

    __tablename__ = "digest_runs"

    __table_args__ = (Index("ix_digest_runs_status", "status"),)

    run_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    run_day: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    records_captured: Mapped[bool] = mapped_column(default=False, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    records: Mapped[list["DigestRunRecordModel"]] = relationship(
        "DigestRunRecordModel",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="DigestRunRecordModel.position",
    )
    groups: Mapped[list["DigestRunGroupModel"]] = relationship(
        "DigestRunGroupModel",
        back_populates="run",
        cascade="all, delete-orphan",
    )


class DigestRunRecordModel(Base):
    """A captured raw record and, once mapped, its outcome."""

    __tablename__ = "digest_run_records"

    __table_args__ = (
        UniqueConstraint("run_id", "record_id", name="uq_digest_run_records_record"),
        Index("ix_digest_run_records_outcome", "run_id", "outcome"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("digest_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    record_id: Mapped[str] = mapped_column(String(200), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)  # "fact" | "failed"
    fact: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failure_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    run: Mapped["DigestRunModel"] = relationship(
        "DigestRunModel", back_populates="records", foreign_keys=[run_id],
    )


class DigestRunGroupModel(Base):
    """A group key whose notification was successfully dispatched."""

    __tablename__ = "digest_run_groups"

    __table_args__ = (
        UniqueConstraint("run_id", "group_key", name="uq_digest_run_groups_key"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("digest_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    group_key: Mapped[str] = mapped_column(String(200), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    run: Mapped["DigestRunModel"] = relationship(
        "DigestRunModel", back_populates="groups", foreign_keys=[run_id],
    )
