"""
Source-field mapping and value parsing for raw records.  ZERO I/O.

The record store returns plain scalars for some columns and "select"
values for others: ``{"value": "42", "text": "Jane Rep"}``, often wrapped
in a one-element list.  ``FieldRef.part`` chooses which half to read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

DEFAULT_DATE_FORMATS: tuple[str, ...] = ("%m/%d/%Y", "%d/%m/%Y")


@dataclass(frozen=True)
class FieldRef:
    """Source column name plus which part of a select value to read."""

    name: str
    part: str | None = None  # "value", "text", or None for plain scalars


@dataclass(frozen=True)
class FieldMap:
    """Which source column feeds each Fact attribute.

    Defaults match the daily sales-order search columns.
    """

    document_id: FieldRef = FieldRef("tranid")
    counterparty_name: FieldRef = FieldRef("entity", "text")
    occurred_on: FieldRef = FieldRef("trandate")
    amount: FieldRef = FieldRef("amount")
    owner_id: FieldRef = FieldRef("salesrep", "value")
    owner_name: FieldRef = FieldRef("salesrep", "text")
    approver_id: FieldRef = FieldRef("salesRep.supervisor", "value")
    link_id: FieldRef = FieldRef("internalid", "value")
    date_formats: tuple[str, ...] = field(default=DEFAULT_DATE_FORMATS)

    @classmethod
    def from_mapping(
        cls,
        refs: Mapping[str, FieldRef],
        date_formats: tuple[str, ...] | None = None,
    ) -> FieldMap:
        """Override selected attributes; unknown names raise KeyError."""
        known = {f for f in cls.__dataclass_fields__ if f != "date_formats"}
        unknown = set(refs) - known
        if unknown:
            raise KeyError(f"Unknown fact attributes in field map: {sorted(unknown)}")
        kwargs: dict[str, Any] = dict(refs)
        if date_formats:
            kwargs["date_formats"] = tuple(date_formats)
        return cls(**kwargs)


def resolve_field(values: Mapping[str, Any], ref: FieldRef) -> Any:
    """Read one field; blank strings and empty selects resolve to None."""
    raw = values.get(ref.name)
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if isinstance(raw, Mapping):
        raw = raw.get(ref.part or "value")
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    return raw


def parse_amount(raw: Any) -> Decimal | None:
    """Parse a money amount; None when not a finite decimal."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.replace(",", "")
    try:
        result = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def parse_date(raw: Any, formats: tuple[str, ...] = DEFAULT_DATE_FORMATS) -> date | None:
    """Parse a transaction date from a date, ISO string or listed format."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        pass
    for fmt in formats:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None
