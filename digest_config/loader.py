"""
Configuration Loader (``digest_config.loader``).

Responsibility
--------------
Loads a digest YAML file and parses it into typed ``digest_config.schema``
dataclass instances.  Runtime callers go through
``digest_config.get_active_config()``.

Invariants enforced
-------------------
* Every parse error surfaces as ``ConfigError`` naming the file and the
  offending key; no silent defaults for invalid values.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``ConfigError``.
* Malformed YAML  -> ``ConfigError``.
* Unknown enum value or bad number  -> ``ConfigError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from digest_kernel.exceptions import ConfigError

from digest_config.schema import (
    DigestConfig,
    DispatcherConfig,
    FieldRefDef,
    NotificationConfig,
    PipelineConfig,
    ScheduleConfig,
    SourceConfig,
)

SOURCE_KINDS = frozenset({"json", "memory"})
SOURCE_FORMATS = frozenset({"array", "jsonl"})
DISPATCHER_KINDS = frozenset({"log", "memory", "smtp"})
ADDRESSING_MODES = frozenset({"approver", "owner"})
FREQUENCIES = frozenset({"once", "hourly", "daily", "weekly", "on_demand"})
FIELD_PARTS = frozenset({"value", "text"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization; deterministic."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _choice(data: dict[str, Any], key: str, allowed: frozenset[str], default: str) -> str:
    value = str(data.get(key, default))
    if value not in allowed:
        raise ValueError(f"{key}={value!r}, expected one of {sorted(allowed)}")
    return value


def _positive_int(data: dict[str, Any], key: str, default: int) -> int:
    value = int(data.get(key, default))
    if value < 1:
        raise ValueError(f"{key} must be >= 1, got {value}")
    return value


def parse_source(data: dict[str, Any], base_dir: Path | None = None) -> SourceConfig:
    """Parse the ``source`` section.  Relative paths resolve against ``base_dir``."""
    kind = _choice(data, "kind", SOURCE_KINDS, "json")
    path = data.get("path")
    if path is not None and base_dir is not None and not Path(path).is_absolute():
        path = str(base_dir / path)
    if kind == "json" and not path:
        raise ValueError("source.path is required for a json source")
    return SourceConfig(
        kind=kind,
        path=path,
        format=_choice(data, "format", SOURCE_FORMATS, "array"),
        json_path=data.get("json_path"),
        id_field=data.get("id_field", "internalid"),
        date_field=data.get("date_field", "trandate"),
        encoding=data.get("encoding", "utf-8"),
    )


def parse_field_ref(attribute: str, data: Any) -> FieldRefDef:
    """Parse one field mapping: ``"column"`` or ``{name, part}``."""
    if isinstance(data, str):
        return FieldRefDef(name=data)
    part = data.get("part")
    if part is not None and part not in FIELD_PARTS:
        raise ValueError(f"fields.{attribute}.part={part!r}, expected value or text")
    return FieldRefDef(name=data["name"], part=part)


def parse_dispatcher(data: dict[str, Any]) -> DispatcherConfig:
    kind = _choice(data, "kind", DISPATCHER_KINDS, "log")
    if kind == "smtp" and not (data.get("host") and data.get("from_address")):
        raise ValueError("dispatcher.host and dispatcher.from_address are required for smtp")
    directory = data.get("directory") or {}
    return DispatcherConfig(
        kind=kind,
        host=data.get("host"),
        port=int(data.get("port", 587)),
        from_address=data.get("from_address"),
        user=data.get("user"),
        password_env=data.get("password_env"),
        use_tls=bool(data.get("use_tls", True)),
        timeout_seconds=float(data.get("timeout_seconds", 30.0)),
        fallback_address=data.get("fallback_address"),
        directory=tuple(sorted((str(k), str(v)) for k, v in directory.items())),
    )


def parse_pipeline(data: dict[str, Any]) -> PipelineConfig:
    timeout = data.get("run_timeout_seconds")
    if timeout is not None:
        timeout = float(timeout)
        if timeout <= 0:
            raise ValueError(f"run_timeout_seconds must be positive, got {timeout}")
    return PipelineConfig(
        map_workers=_positive_int(data, "map_workers", 8),
        reduce_workers=_positive_int(data, "reduce_workers", 4),
        run_timeout_seconds=timeout,
        suppress_redispatch=bool(data.get("suppress_redispatch", True)),
    )


def parse_notification(data: dict[str, Any]) -> NotificationConfig:
    return NotificationConfig(
        link_base_url=data.get("link_base_url", ""),
        link_template=data.get("link_template"),
        subject_template=data.get("subject_template"),
        subject_date_format=data.get("subject_date_format", "%m/%d/%Y"),
        addressing=_choice(data, "addressing", ADDRESSING_MODES, "approver"),
    )


def _timezone_name(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone {name!r}") from exc
    return name


def parse_schedule(data: dict[str, Any]) -> ScheduleConfig:
    return ScheduleConfig(
        job_name=data.get("job_name", "daily-sales-digest"),
        frequency=_choice(data, "frequency", FREQUENCIES, "daily"),
        cron_expression=data.get("cron_expression"),
        tick_interval_seconds=float(data.get("tick_interval_seconds", 60)),
        is_active=bool(data.get("is_active", True)),
        timezone=_timezone_name(data.get("timezone", "UTC")),
    )


def parse_config(data: dict[str, Any], base_dir: Path | None = None) -> DigestConfig:
    """Parse a whole configuration dict.

    Raises:
        KeyError: if required keys are missing.
        ValueError: if a value is out of range.
    """
    fields = data.get("fields") or {}
    return DigestConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        source=parse_source(data.get("source") or {}, base_dir),
        fields=tuple(
            (attribute, parse_field_ref(attribute, ref))
            for attribute, ref in sorted(fields.items())
        ),
        date_formats=tuple(data.get("date_formats") or ()),
        dispatcher=parse_dispatcher(data.get("dispatcher") or {}),
        pipeline=parse_pipeline(data.get("pipeline") or {}),
        notification=parse_notification(data.get("notification") or {}),
        schedule=parse_schedule(data.get("schedule") or {}),
        database_url=data.get("database_url", "sqlite:///digest_state.db"),
    )


def load_config(path: Path) -> DigestConfig:
    """Load and parse one configuration file.

    Raises:
        ConfigError: on a missing file, invalid YAML or invalid values.
    """
    path = Path(path)
    try:
        data = load_yaml_file(path)
    except FileNotFoundError as exc:
        raise ConfigError(str(path), "file not found") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(str(path), f"invalid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    try:
        return parse_config(data, base_dir=path.parent)
    except KeyError as exc:
        raise ConfigError(str(path), f"missing key {exc}") from exc
    except (ValueError, TypeError, AttributeError) as exc:
        raise ConfigError(str(path), str(exc)) from exc
