"""
DigestConfig schema.

Defines the human-authored configuration for a digest deployment.  YAML
files are parsed into these types by the loader; the batch orchestrator
turns them into wired pipeline objects.

The schema holds plain strings and numbers only.  Names such as
``addressing`` or ``frequency`` are validated by the loader against the
values the pipeline understands.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Record source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceConfig:
    """Where the day's records are read from."""

    kind: str = "json"  # "json" or "memory"
    path: str | None = None
    format: str = "array"  # "array" or "jsonl"
    json_path: str | None = None
    id_field: str = "internalid"
    date_field: str = "trandate"
    encoding: str = "utf-8"


@dataclass(frozen=True)
class FieldRefDef:
    """One source column feeding a fact attribute."""

    name: str
    part: str | None = None  # "value", "text", or None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DispatcherConfig:
    """Notification transport.

    The SMTP password is never stored in the file; ``password_env`` names
    the environment variable that holds it.
    """

    kind: str = "log"  # "log", "memory" or "smtp"
    host: str | None = None
    port: int = 587
    from_address: str | None = None
    user: str | None = None
    password_env: str | None = None
    use_tls: bool = True
    timeout_seconds: float = 30.0
    fallback_address: str | None = None
    directory: tuple[tuple[str, str], ...] = ()  # (agent_id, email)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Worker pools, run timeout and replay behaviour."""

    map_workers: int = 8
    reduce_workers: int = 4
    run_timeout_seconds: float | None = None
    suppress_redispatch: bool = True


@dataclass(frozen=True)
class NotificationConfig:
    """Message content and addressing.

    ``None`` templates fall back to the aggregator's defaults.
    """

    link_base_url: str = ""
    link_template: str | None = None
    subject_template: str | None = None
    subject_date_format: str = "%m/%d/%Y"
    addressing: str = "approver"  # "approver" or "owner"


@dataclass(frozen=True)
class ScheduleConfig:
    """Recurring trigger."""

    job_name: str = "daily-sales-digest"
    frequency: str = "daily"
    cron_expression: str | None = None
    tick_interval_seconds: float = 60
    is_active: bool = True
    timezone: str = "UTC"  # zone the run day and cron are evaluated in


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DigestConfig:
    """Root configuration artifact, identified by id, version and checksum."""

    config_id: str
    version: int
    checksum: str
    source: SourceConfig = field(default_factory=SourceConfig)
    fields: tuple[tuple[str, FieldRefDef], ...] = ()  # (fact attribute, ref)
    date_formats: tuple[str, ...] = ()
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    database_url: str = "sqlite:///digest_state.db"
