"""
DigestOrchestrator -- DI container for the digest pipeline.

Contract:
    Turns a DigestConfig into wired pipeline objects: record source, fact
    extractor, aggregator with its dispatcher, run-state store and
    coordinator, plus an optional scheduler.  Single place where all
    digest dependencies are composed.

Architecture: digest_batch (top-level).  This is the canonical entry point
    for configuring and running the digest.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - No kernel imports of digest_batch (orchestrator lives here).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from digest_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from digest_kernel.domain.clock import Clock, SystemClock
from digest_kernel.exceptions import ConfigError
from digest_kernel.logging_config import get_logger

from digest_batch.adapters.dispatcher import (
    Dispatcher,
    InMemoryDispatcher,
    LoggingDispatcher,
    SmtpDispatcher,
)
from digest_batch.adapters.source import (
    InMemoryRecordSource,
    JsonRecordSource,
    RecordSource,
)
from digest_batch.domain.fields import FieldMap, FieldRef
from digest_batch.domain.types import Addressing, DigestSchedule, ScheduleFrequency
from digest_batch.services.coordinator import RunCoordinator
from digest_batch.services.run_state import (
    InMemoryRunStateStore,
    RunStateStore,
    SqlRunStateStore,
)
from digest_batch.services.scheduler import DigestScheduler
from digest_batch.stages.aggregator import GroupAggregator
from digest_batch.stages.extractor import FactExtractor
from digest_config.schema import DigestConfig

logger = get_logger("batch.orchestrator")


class DigestOrchestrator:
    """DI container for the digest pipeline.

    Contract:
        - ``from_config()`` factory creates a fully wired orchestrator.
        - ``create_coordinator()`` returns a RunCoordinator for one-off runs.
        - ``create_scheduler()`` returns a DigestScheduler for background use.

    Non-goals:
        - Does NOT start the scheduler automatically -- caller decides.
    """

    def __init__(
        self,
        config: DigestConfig,
        source: RecordSource,
        dispatcher: Dispatcher,
        store: RunStateStore,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._source = source
        self._dispatcher = dispatcher
        self._store = store
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: DigestConfig,
        clock: Clock | None = None,
        session_factory: Callable[[], Session] | None = None,
        dry_run: bool = False,
        source: RecordSource | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> DigestOrchestrator:
        """Create a fully wired DigestOrchestrator.

        Args:
            config: Parsed configuration.
            clock: Optional clock for deterministic testing.
            session_factory: Run-state sessions.  If None, an engine is
                initialized from ``config.database_url`` and its tables
                are created.
            dry_run: Log notifications instead of sending them.
            source / dispatcher: Optional overrides of the configured ones.

        Raises:
            ConfigError: If the configuration cannot be turned into objects.
        """
        effective_clock = clock or SystemClock(ZoneInfo(config.schedule.timezone))

        if session_factory is None:
            engine = init_engine_from_url(config.database_url)
            create_tables(engine)
            session_factory = get_session_factory()

        if dispatcher is None:
            dispatcher = LoggingDispatcher() if dry_run else build_dispatcher(config)

        return cls(
            config=config,
            source=source or build_source(config),
            dispatcher=dispatcher,
            store=SqlRunStateStore(session_factory, clock=effective_clock),
            clock=effective_clock,
        )

    @classmethod
    def in_memory(
        cls,
        config: DigestConfig,
        source: RecordSource,
        dispatcher: Dispatcher,
        clock: Clock | None = None,
    ) -> DigestOrchestrator:
        """Orchestrator with process-local run state (tests and demos)."""
        return cls(
            config=config,
            source=source,
            dispatcher=dispatcher,
            store=InMemoryRunStateStore(),
            clock=clock or SystemClock(ZoneInfo(config.schedule.timezone)),
        )

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    def create_extractor(self) -> FactExtractor:
        return FactExtractor(build_field_map(self._config))

    def create_aggregator(self) -> GroupAggregator:
        n = self._config.notification
        kwargs = {}
        if n.link_template:
            kwargs["link_template"] = n.link_template
        if n.subject_template:
            kwargs["subject_template"] = n.subject_template
        return GroupAggregator(
            dispatcher=self._dispatcher,
            link_base_url=n.link_base_url,
            subject_date_format=n.subject_date_format,
            addressing=Addressing(n.addressing),
            **kwargs,
        )

    def create_coordinator(self) -> RunCoordinator:
        p = self._config.pipeline
        return RunCoordinator(
            source=self._source,
            extractor=self.create_extractor(),
            aggregator=self.create_aggregator(),
            store=self._store,
            clock=self._clock,
            map_workers=p.map_workers,
            reduce_workers=p.reduce_workers,
            run_timeout_seconds=p.run_timeout_seconds,
            suppress_redispatch=p.suppress_redispatch,
        )

    def create_scheduler(
        self,
        tick_interval_seconds: float | None = None,
    ) -> DigestScheduler:
        """Create a DigestScheduler firing a fresh coordinator's runs.

        Args:
            tick_interval_seconds: Polling interval override.
        """
        s = self._config.schedule
        return DigestScheduler(
            coordinator=self.create_coordinator(),
            schedule=DigestSchedule(
                job_name=s.job_name,
                frequency=ScheduleFrequency(s.frequency),
                cron_expression=s.cron_expression,
                is_active=s.is_active,
            ),
            clock=self._clock,
            tick_interval_seconds=(
                tick_interval_seconds
                if tick_interval_seconds is not None
                else s.tick_interval_seconds
            ),
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> DigestConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def source(self) -> RecordSource:
        return self._source

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def store(self) -> RunStateStore:
        return self._store


# =============================================================================
# Config bridges
# =============================================================================


def build_field_map(config: DigestConfig) -> FieldMap:
    try:
        return FieldMap.from_mapping(
            {attr: FieldRef(ref.name, ref.part) for attr, ref in config.fields},
            date_formats=config.date_formats or None,
        )
    except KeyError as exc:
        raise ConfigError(config.config_id, str(exc)) from exc


def build_source(config: DigestConfig) -> RecordSource:
    s = config.source
    if s.kind == "memory":
        return InMemoryRecordSource()
    kwargs = {}
    if config.date_formats:
        kwargs["date_formats"] = config.date_formats
    return JsonRecordSource(
        path=Path(s.path),
        fmt=s.format,
        json_path=s.json_path,
        id_field=s.id_field,
        date_field=s.date_field,
        encoding=s.encoding,
        **kwargs,
    )


def build_dispatcher(config: DigestConfig) -> Dispatcher:
    d = config.dispatcher
    if d.kind == "memory":
        return InMemoryDispatcher()
    if d.kind == "log":
        return LoggingDispatcher()

    password = None
    if d.password_env:
        password = os.environ.get(d.password_env)
        if password is None:
            logger.warning("smtp_password_missing", extra={"env_var": d.password_env})
    return SmtpDispatcher(
        host=d.host,
        port=d.port,
        from_address=d.from_address,
        directory=dict(d.directory),
        user=d.user,
        password=password,
        fallback_address=d.fallback_address,
        use_tls=d.use_tls,
        timeout=d.timeout_seconds,
    )
