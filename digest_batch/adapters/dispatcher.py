"""
Dispatcher adapters -- the notification boundary.

Contract:
    ``Dispatcher.send(notification)`` returns a DispatchReceipt (success or
    failure).  A failure is logged by the reduce stage and never aborts the
    run.  Adapters should treat ``notification.idempotency_key`` as the
    dedup key for a (group, run day).

Implementations:
    - LoggingDispatcher: dry run, writes the message to the log.
    - InMemoryDispatcher: collects messages; dedups by key; can be told to
      fail for chosen recipients.
    - SmtpDispatcher: SMTP delivery with an agent-id -> address directory.

``render_summary_html`` builds the message body (document table).
"""

from __future__ import annotations

import html
import re
import smtplib
import threading
from datetime import date
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Mapping, Protocol, runtime_checkable

from digest_kernel.logging_config import get_logger

from digest_batch.domain.types import DispatchReceipt, GroupSummary, Notification

logger = get_logger("batch.dispatcher")


@runtime_checkable
class Dispatcher(Protocol):
    """Renders nothing, sends one notification."""

    def send(self, notification: Notification) -> DispatchReceipt: ...


# =============================================================================
# Rendering
# =============================================================================


def render_summary_html(summary: GroupSummary, run_day: date) -> str:
    """HTML body: greeting, one table row per document, sign-off."""
    rows = []
    for row in summary.rows:
        rows.append(
            "<tr>"
            f'<td><a href="{html.escape(row.document_link, quote=True)}">'
            f"{html.escape(row.document_id)}</a></td>"
            f"<td>{html.escape(row.counterparty_name)}</td>"
            f"<td>{row.occurred_on.strftime('%m/%d/%Y')}</td>"
            f"<td>{row.amount:.2f}</td>"
            "</tr>"
        )

    return (
        "<table><tr><td>Dear,</td></tr><tr><td>"
        "Please find below a summary of the sales orders processed on "
        f"{run_day.strftime('%m/%d/%Y')} for {html.escape(summary.owner_name)}."
        "</td></tr><tr><td><table border=\"1\"><tr>"
        "<th><b>Document Number</b></th><th><b>Customer Name</b></th>"
        "<th><b>Date of Sales Order Creation</b></th><th><b>Total Amount</b></th>"
        "</tr>"
        + "".join(rows)
        + f"<tr><td colspan=\"3\"><b>Total</b></td><td><b>{summary.total_amount:.2f}</b></td></tr>"
        "</table></td></tr><tr><td>With regards,</td></tr><tr><td></td></tr></table>"
    )


def html_to_plaintext(content: str) -> str:
    """Rough plaintext fallback for HTML bodies."""
    text = re.sub(r"</(tr|p|div|h[1-6])>", "\n", content)
    text = re.sub(r"</t[dh]>", "\t", text)
    text = re.sub(r"<br\s*/?>", "\n", text)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    text = re.sub(r"\n\s*\n", "\n", text)
    return text.strip()


# =============================================================================
# Adapters
# =============================================================================


class LoggingDispatcher:
    """Dry-run dispatcher: logs each message instead of sending it."""

    def send(self, notification: Notification) -> DispatchReceipt:
        logger.info(
            "notification_logged",
            extra={
                "author_id": notification.author_id,
                "recipient_id": notification.recipient_id,
                "subject": notification.subject,
                "idempotency_key": notification.idempotency_key,
                "body_length": len(notification.body),
            },
        )
        return DispatchReceipt.ok(message_id=notification.idempotency_key)


class InMemoryDispatcher:
    """Collects sent notifications; idempotent per ``idempotency_key``.

    Args:
        fail_for: Recipient ids whose sends report failure.
        raise_for: Recipient ids whose sends raise (transport crash).
    """

    def __init__(
        self,
        fail_for: set[str] | None = None,
        raise_for: set[str] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._sent: dict[str, Notification] = {}
        self.attempts: list[Notification] = []
        self.fail_for = set(fail_for or ())
        self.raise_for = set(raise_for or ())

    def send(self, notification: Notification) -> DispatchReceipt:
        with self._lock:
            self.attempts.append(notification)
            if notification.recipient_id in self.raise_for:
                raise ConnectionError(f"transport down for {notification.recipient_id}")
            if notification.recipient_id in self.fail_for:
                return DispatchReceipt.failed(
                    f"recipient {notification.recipient_id} rejected"
                )
            if notification.idempotency_key in self._sent:
                return DispatchReceipt.ok(
                    message_id=notification.idempotency_key, duplicate=True,
                )
            self._sent[notification.idempotency_key] = notification
            return DispatchReceipt.ok(message_id=notification.idempotency_key)

    @property
    def sent(self) -> tuple[Notification, ...]:
        with self._lock:
            return tuple(self._sent.values())


class SmtpDispatcher:
    """Deliver notifications over SMTP.

    Agent ids are resolved to addresses through ``directory``; ids with no
    entry go to ``fallback_address`` when set (this is where messages for
    the unknown-approver sentinel land), otherwise the send fails.
    """

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        directory: Mapping[str, str],
        user: str | None = None,
        password: str | None = None,
        fallback_address: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.from_address = from_address
        self.directory = dict(directory)
        self.user = user
        self.password = password
        self.fallback_address = fallback_address
        self.use_tls = use_tls
        self.timeout = timeout
        self._lock = threading.Lock()
        self._delivered: set[str] = set()

    def resolve(self, agent_id: str) -> str | None:
        return self.directory.get(agent_id, self.fallback_address)

    def send(self, notification: Notification) -> DispatchReceipt:
        with self._lock:
            if notification.idempotency_key in self._delivered:
                return DispatchReceipt.ok(
                    message_id=notification.idempotency_key, duplicate=True,
                )

        to_address = self.resolve(notification.recipient_id)
        if to_address is None:
            return DispatchReceipt.failed(
                f"no address for recipient {notification.recipient_id}"
            )

        msg = MIMEMultipart("alternative")
        msg["Subject"] = notification.subject
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = make_msgid(idstring=notification.idempotency_key.replace(":", "."))
        reply_to = self.resolve(notification.author_id)
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(html_to_plaintext(notification.body), "plain"))
        msg.attach(MIMEText(notification.body, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            return DispatchReceipt.failed(f"{type(exc).__name__}: {exc}")

        with self._lock:
            self._delivered.add(notification.idempotency_key)
        logger.info(
            "smtp_message_sent",
            extra={"to": to_address, "subject": notification.subject},
        )
        return DispatchReceipt.ok(message_id=msg["Message-ID"])
