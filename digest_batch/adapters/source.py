"""
Record sources -- where the day's transaction records come from.

Contract:
    ``RecordSource.fetch_daily_records(as_of)`` returns at most PAGE_LIMIT
    RawRecords for that calendar day, or raises SourceUnavailableError on
    connectivity / query errors.  The error is fatal to the Fetching state;
    there is no partial run without input.

Architecture: digest_batch/adapters.  File I/O only, no DB imports.
"""

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol, runtime_checkable

from digest_kernel.exceptions import SourceUnavailableError

from digest_batch.domain.fields import (
    DEFAULT_DATE_FORMATS,
    FieldRef,
    parse_date,
    resolve_field,
)
from digest_batch.domain.types import PAGE_LIMIT, RawRecord


@runtime_checkable
class RecordSource(Protocol):
    """Supplies one day's raw records, bounded at PAGE_LIMIT per call."""

    @property
    def name(self) -> str: ...

    def fetch_daily_records(self, as_of: date) -> tuple[RawRecord, ...]: ...


class InMemoryRecordSource:
    """Records held in memory, keyed by day.  Used by tests and demos.

    ``unavailable`` makes every fetch raise SourceUnavailableError.
    ``fetch_count`` lets callers assert that a restart did not re-fetch.
    """

    def __init__(
        self,
        records_by_day: Mapping[date, Iterable[RawRecord]] | None = None,
        unavailable: str | None = None,
    ) -> None:
        self._records = {
            day: tuple(records) for day, records in (records_by_day or {}).items()
        }
        self.unavailable = unavailable
        self.fetch_count = 0

    @property
    def name(self) -> str:
        return "memory"

    def add(self, day: date, *records: RawRecord) -> None:
        self._records[day] = self._records.get(day, ()) + records

    def fetch_daily_records(self, as_of: date) -> tuple[RawRecord, ...]:
        self.fetch_count += 1
        if self.unavailable:
            raise SourceUnavailableError(self.name, self.unavailable)
        return self._records.get(as_of, ())[:PAGE_LIMIT]


def _get_nested(data: Any, path: str) -> Any:
    """Follow a dot-separated path into dicts/lists; None if missing."""
    for key in path.split("."):
        key = key.strip()
        if not key:
            continue
        if isinstance(data, list):
            try:
                data = data[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(data, dict) and key in data:
            data = data[key]
        else:
            return None
    return data


class JsonRecordSource:
    """Read records from a JSON array or JSON Lines export.

    Each object is one record, its fields either top level or under a
    ``values`` key.  Records are kept when their date field falls on the
    requested day.

    Args:
        path: Export file.
        fmt: ``"array"`` or ``"jsonl"``.
        json_path: Dot path to a nested array (``"data.records"``).
        id_field: Field holding the record's identifier.
        date_field: Field compared against ``as_of``.
    """

    def __init__(
        self,
        path: Path,
        fmt: str = "array",
        json_path: str | None = None,
        id_field: str = "internalid",
        date_field: str = "trandate",
        date_formats: tuple[str, ...] = DEFAULT_DATE_FORMATS,
        encoding: str = "utf-8",
    ) -> None:
        if fmt not in ("array", "jsonl"):
            raise ValueError(f"Unsupported JSON format: {fmt!r}")
        self.path = Path(path)
        self.fmt = fmt
        self.json_path = json_path
        self._id_ref = FieldRef(id_field, "value")
        self._date_ref = FieldRef(date_field)
        self.date_formats = date_formats
        self.encoding = encoding

    @property
    def name(self) -> str:
        return f"json:{self.path.name}"

    def fetch_daily_records(self, as_of: date) -> tuple[RawRecord, ...]:
        try:
            items = list(self._read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SourceUnavailableError(self.name, f"{type(exc).__name__}: {exc}") from exc

        records: list[RawRecord] = []
        for index, item in enumerate(items):
            values = item.get("values", item)
            if not isinstance(values, dict):
                continue
            if parse_date(resolve_field(values, self._date_ref), self.date_formats) != as_of:
                continue
            record_id = item.get("id") or resolve_field(values, self._id_ref)
            records.append(
                RawRecord(
                    record_id=str(record_id) if record_id is not None else f"row-{index}",
                    values=values,
                )
            )
            if len(records) >= PAGE_LIMIT:
                break
        return tuple(records)

    def _read(self) -> Iterator[dict[str, Any]]:
        with self.path.open("r", encoding=self.encoding) as f:
            if self.fmt == "jsonl":
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    item = json.loads(line)
                    if isinstance(item, dict):
                        yield item
                return
            data = json.load(f)

        root = _get_nested(data, self.json_path) if self.json_path else data
        if not isinstance(root, list):
            raise json.JSONDecodeError(
                f"expected a JSON array at {self.json_path or '<root>'}", "", 0,
            )
        for item in root:
            if isinstance(item, dict):
                yield item
