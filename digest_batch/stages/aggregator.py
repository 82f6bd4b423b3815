"""
GroupAggregator -- Reduce stage.

Contract:
    ``reduce(group, run_day)`` consumes one complete FactGroup, builds its
    GroupSummary, hands one Notification to the dispatcher and returns a
    ReduceOutcome.  An empty group is a no-op.  A dispatch failure (failed
    receipt or adapter exception) is recorded and returned; it is never
    retried within the run and never raised.

Invariants enforced:
    - approver = first fact carrying one, else UNKNOWN_APPROVER.
    - owner name = first name that is not the bare owner id, taking facts
      by record id, so it does not depend on arrival order.
    - Result is independent of fact order except for row order, which is
      arrival order and carries no meaning.
    - At most one send per call.
"""

from __future__ import annotations

from datetime import date
from typing import Callable

from digest_kernel.exceptions import DispatchError
from digest_kernel.logging_config import get_logger

from digest_batch.adapters.dispatcher import Dispatcher, render_summary_html
from digest_batch.domain.types import (
    UNKNOWN_APPROVER,
    Addressing,
    Fact,
    FactGroup,
    FailureKind,
    GroupSummary,
    Notification,
    ReduceOutcome,
    ReduceStatus,
    Stage,
    SummaryRow,
    UnitFailure,
)
from digest_batch.services.error_sink import ErrorSink

logger = get_logger("batch.aggregator")

DEFAULT_SUBJECT_TEMPLATE = "{owner_name}, review your summary for {today}"
DEFAULT_LINK_TEMPLATE = (
    "{base_url}/app/accounting/transactions/salesord.nl?id={link_id}&whence="
)

Renderer = Callable[[GroupSummary, date], str]


class GroupAggregator:
    """Summarizes one group and dispatches its notification."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        link_base_url: str = "",
        link_template: str = DEFAULT_LINK_TEMPLATE,
        subject_template: str = DEFAULT_SUBJECT_TEMPLATE,
        subject_date_format: str = "%m/%d/%Y",
        addressing: Addressing = Addressing.APPROVER,
        renderer: Renderer = render_summary_html,
    ) -> None:
        self._dispatcher = dispatcher
        self._link_base_url = link_base_url.rstrip("/")
        self._link_template = link_template
        self._subject_template = subject_template
        self._subject_date_format = subject_date_format
        self._addressing = addressing
        self._renderer = renderer

    # -------------------------------------------------------------------------
    # Pure steps
    # -------------------------------------------------------------------------

    def summarize(self, group: FactGroup) -> GroupSummary | None:
        """Build the summary; None for an empty group."""
        if group.is_empty:
            return None

        approver_id = next(
            (f.approver_id for f in group.facts if f.approver_id),
            UNKNOWN_APPROVER,
        )
        return GroupSummary(
            group_key=group.group_key,
            approver_id=approver_id,
            owner_name=_owner_name(group),
            rows=tuple(self._project(f) for f in group.facts),
        )

    def build_notification(self, summary: GroupSummary, run_day: date) -> Notification:
        subject = self._subject_template.format(
            owner_name=summary.owner_name,
            today=run_day.strftime(self._subject_date_format),
        )
        if self._addressing == Addressing.APPROVER:
            author_id, recipient_id = summary.group_key, summary.approver_id
        else:
            author_id, recipient_id = summary.approver_id, summary.group_key

        return Notification(
            author_id=author_id,
            recipient_id=recipient_id,
            subject=subject,
            body=self._renderer(summary, run_day),
            idempotency_key=f"{summary.group_key}:{run_day.isoformat()}",
        )

    def _project(self, fact: Fact) -> SummaryRow:
        return SummaryRow(
            document_id=fact.document_id,
            counterparty_name=fact.counterparty_name,
            occurred_on=fact.occurred_on,
            amount=fact.amount,
            document_link=self._link_template.format(
                base_url=self._link_base_url,
                link_id=fact.link_id or fact.record_id,
                record_id=fact.record_id,
                document_id=fact.document_id,
            ),
        )

    # -------------------------------------------------------------------------
    # Reduce
    # -------------------------------------------------------------------------

    def reduce(
        self,
        group: FactGroup,
        run_day: date,
        error_sink: ErrorSink | None = None,
    ) -> ReduceOutcome:
        summary = self.summarize(group)
        if summary is None:
            return ReduceOutcome(group_key=group.group_key, status=ReduceStatus.EMPTY)

        if not summary.has_known_approver:
            logger.warning(
                "approver_unknown",
                extra={"group_key": group.group_key, "sentinel": UNKNOWN_APPROVER},
            )

        notification = self.build_notification(summary, run_day)

        failure: UnitFailure | None = None
        try:
            receipt = self._dispatcher.send(notification)
        except DispatchError as exc:
            failure = self._failure(group.group_key, FailureKind.DISPATCH_FAILED, exc.reason)
        except Exception as exc:
            failure = self._failure(
                group.group_key,
                FailureKind.UNHANDLED_EXCEPTION,
                f"{type(exc).__name__}: {exc}",
            )
        else:
            if not receipt.success:
                failure = self._failure(
                    group.group_key,
                    FailureKind.DISPATCH_FAILED,
                    receipt.error or "dispatcher reported failure",
                )

        if failure is not None:
            if error_sink is not None:
                error_sink.record(failure)
            else:
                logger.error(
                    "dispatch_failed",
                    extra={"group_key": group.group_key, "reason": failure.message},
                )
            return ReduceOutcome(
                group_key=group.group_key,
                status=ReduceStatus.DISPATCH_FAILED,
                summary=summary,
                notification=notification,
                failure=failure,
            )

        logger.info(
            "notification_dispatched",
            extra={
                "group_key": group.group_key,
                "recipient_id": notification.recipient_id,
                "rows": len(summary.rows),
                "total_amount": summary.total_amount,
                "duplicate": receipt.duplicate,
            },
        )
        return ReduceOutcome(
            group_key=group.group_key,
            status=ReduceStatus.DISPATCHED,
            summary=summary,
            notification=notification,
        )

    @staticmethod
    def _failure(group_key: str, kind: FailureKind, message: str) -> UnitFailure:
        return UnitFailure(
            stage=Stage.REDUCE, unit_key=group_key, kind=kind, message=message,
        )


def _owner_name(group: FactGroup) -> str:
    facts = sorted(group.facts, key=lambda f: f.record_id)
    for fact in facts:
        if fact.owner_name and fact.owner_name != fact.owner_id:
            return fact.owner_name
    return facts[0].owner_name
