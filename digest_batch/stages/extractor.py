"""
FactExtractor -- Map stage.

Contract:
    ``extract(record)`` turns one RawRecord into an ExtractionOutcome that
    holds either a Fact or a UnitFailure.  It never raises: missing or
    malformed fields become failures tagged with the record id, so one bad
    record cannot block the others.

Architecture: digest_batch/stages.  Pure transformation, safe to call from
    any number of worker threads concurrently.
"""

from __future__ import annotations

from digest_kernel.exceptions import (
    ExtractionError,
    MalformedFieldError,
    MissingFieldError,
)

from digest_batch.domain.fields import (
    FieldMap,
    FieldRef,
    parse_amount,
    parse_date,
    resolve_field,
)
from digest_batch.domain.types import (
    ExtractionOutcome,
    Fact,
    FailureKind,
    RawRecord,
    Stage,
    UnitFailure,
)


class MissingOwnerError(MissingFieldError):
    """The owner field is absent, so the record cannot be grouped."""

    code: str = "MISSING_OWNER"


_KIND_BY_CODE = {
    MissingOwnerError.code: FailureKind.MISSING_OWNER,
    MissingFieldError.code: FailureKind.MISSING_FIELD,
    MalformedFieldError.code: FailureKind.MALFORMED_FIELD,
}


class FactExtractor:
    """Projects raw records onto Facts using a FieldMap."""

    def __init__(self, field_map: FieldMap | None = None):
        self._fields = field_map or FieldMap()

    @property
    def field_map(self) -> FieldMap:
        return self._fields

    def extract(self, record: RawRecord) -> ExtractionOutcome:
        try:
            fact = self._build_fact(record)
        except ExtractionError as exc:
            return ExtractionOutcome(
                record_id=record.record_id,
                failure=UnitFailure(
                    stage=Stage.MAP,
                    unit_key=record.record_id,
                    kind=_KIND_BY_CODE.get(exc.code, FailureKind.MALFORMED_FIELD),
                    message=str(exc),
                    field_name=getattr(exc, "field_name", None),
                ),
            )
        except Exception as exc:
            return ExtractionOutcome(
                record_id=record.record_id,
                failure=UnitFailure(
                    stage=Stage.MAP,
                    unit_key=record.record_id,
                    kind=FailureKind.UNHANDLED_EXCEPTION,
                    message=f"{type(exc).__name__}: {exc}",
                ),
            )
        return ExtractionOutcome(record_id=record.record_id, fact=fact)

    def _build_fact(self, record: RawRecord) -> Fact:
        f = self._fields
        values = record.values

        # Owner first: without it the record has no group.
        owner_id = resolve_field(values, f.owner_id)
        if owner_id is None:
            raise MissingOwnerError(record.record_id, f.owner_id.name)
        owner_id = str(owner_id)

        document_id = str(self._required(record, f.document_id))
        counterparty = str(self._required(record, f.counterparty_name))

        raw_date = self._required(record, f.occurred_on)
        occurred_on = parse_date(raw_date, f.date_formats)
        if occurred_on is None:
            raise MalformedFieldError(record.record_id, f.occurred_on.name, raw_date)

        raw_amount = self._required(record, f.amount)
        amount = parse_amount(raw_amount)
        if amount is None:
            raise MalformedFieldError(record.record_id, f.amount.name, raw_amount)

        owner_name = resolve_field(values, f.owner_name)
        approver_id = resolve_field(values, f.approver_id)
        link_id = resolve_field(values, f.link_id)

        return Fact(
            group_key=owner_id,
            record_id=record.record_id,
            document_id=document_id,
            counterparty_name=counterparty,
            occurred_on=occurred_on,
            amount=amount,
            owner_id=owner_id,
            owner_name=str(owner_name) if owner_name is not None else owner_id,
            approver_id=str(approver_id) if approver_id is not None else None,
            link_id=str(link_id) if link_id is not None else record.record_id,
        )

    @staticmethod
    def _required(record: RawRecord, ref: FieldRef):
        value = resolve_field(record.values, ref)
        if value is None:
            raise MissingFieldError(record.record_id, ref.name)
        return value
