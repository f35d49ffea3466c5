"""Notification trigger layer.

The trigger decides *who* is told about a lifecycle event and what the message
says. Delivery goes through a :class:`NotificationSender`; delivery failures are
logged and counted but never propagate to the caller, so a broken mail server
cannot fail or roll back the mutation that triggered the notice.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Iterable, Protocol, Sequence
from urllib.parse import urlencode

from apps.helpdesk.metrics import MetricsRegistry, metrics_registry

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    async def send(self, to_address: str, subject: str, html_body: str) -> str:
        """Deliver a message and return its message id."""
        ...


class SMTPNotificationSender:
    """Send HTML mail over SMTP from a worker thread."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._from_address = from_address
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout

    def build_message(self, to_address: str, subject: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._from_address
        message["To"] = to_address
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")
        return message

    async def send(self, to_address: str, subject: str, html_body: str) -> str:
        message = self.build_message(to_address, subject, html_body)
        await asyncio.to_thread(self._deliver, message)
        message_id = str(message["Message-ID"])
        logger.info("Email sent to %s: %s", to_address, message_id)
        return message_id

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as client:
            if self._use_tls:
                client.starttls()
            if self._username and self._password:
                client.login(self._username, self._password)
            client.send_message(message)


class LoggingNotificationSender:
    """Sender used when email delivery is disabled; it only logs."""

    async def send(self, to_address: str, subject: str, html_body: str) -> str:
        message_id = make_msgid()
        logger.info("Email delivery disabled; would send %r to %s (%s)", subject, to_address, message_id)
        return message_id


@dataclass(slots=True, frozen=True)
class Recipient:
    """A user who may receive a notification."""

    id: str
    email: str | None
    name: str


@dataclass(slots=True, frozen=True)
class TicketNotice:
    """Ticket fields rendered into notification bodies."""

    ticket_id: str
    ticket_number: str
    title: str
    status: str
    priority: str


class NotificationTrigger:
    """Decide recipients for lifecycle events and dispatch them best-effort."""

    def __init__(
        self,
        sender: NotificationSender,
        *,
        public_base_url: str = "http://localhost:3000",
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._sender = sender
        self._base_url = public_base_url.rstrip("/")
        self._metrics = metrics or metrics_registry

    async def verification_requested(self, recipient: Recipient, token: str) -> None:
        query = urlencode({"email": recipient.email or "", "token": token})
        link = f"{self._base_url}/verify-email?{query}"
        body = (
            f"<p>Hello {escape(recipient.name)},</p>"
            "<p>Please confirm your email address to continue your registration:</p>"
            f'<p><a href="{escape(link)}">Verify email</a></p>'
        )
        await self._dispatch("verification", [recipient], "Verify your email address", body)

    async def approval_pending(self, recipient: Recipient) -> None:
        body = (
            f"<p>Hello {escape(recipient.name)},</p>"
            "<p>Your email address is verified. An administrator will review your account shortly.</p>"
        )
        await self._dispatch("approval_pending", [recipient], "Your account is awaiting approval", body)

    async def account_approved(self, recipient: Recipient) -> None:
        body = (
            f"<p>Hello {escape(recipient.name)},</p>"
            "<p>Your account has been approved. You can now sign in.</p>"
        )
        await self._dispatch("account_approved", [recipient], "Your account has been approved", body)

    async def ticket_created(
        self, notice: TicketNotice, *, author: Recipient | None, assignee: Recipient | None
    ) -> None:
        await self._dispatch(
            "ticket_created",
            [author],
            f"[{notice.ticket_number}] Ticket received",
            self._ticket_body(notice, "Your ticket has been created."),
        )
        if assignee is not None and (author is None or assignee.id != author.id):
            await self.ticket_assigned(notice, assignee=assignee, actor_id=author.id if author else None)

    async def ticket_assigned(
        self, notice: TicketNotice, *, assignee: Recipient | None, actor_id: str | None
    ) -> None:
        await self._dispatch(
            "ticket_assigned",
            [assignee],
            f"[{notice.ticket_number}] Ticket assigned to you",
            self._ticket_body(notice, "A ticket has been assigned to you."),
            exclude=actor_id,
        )

    async def ticket_status_changed(
        self, notice: TicketNotice, *, author: Recipient | None, old_status: str, actor_id: str | None
    ) -> None:
        message = f"Status changed from <b>{escape(old_status)}</b> to <b>{escape(notice.status)}</b>."
        await self._dispatch(
            "ticket_status_changed",
            [author],
            f"[{notice.ticket_number}] Status is now {notice.status}",
            self._ticket_body(notice, message),
            exclude=actor_id,
        )

    async def comment_added(
        self, notice: TicketNotice, *, participants: Sequence[Recipient | None], actor_id: str | None
    ) -> None:
        await self._dispatch(
            "comment_added",
            participants,
            f"[{notice.ticket_number}] New comment",
            self._ticket_body(notice, "A new comment was added to the ticket."),
            exclude=actor_id,
        )

    async def ticket_escalated(
        self,
        notice: TicketNotice,
        *,
        contacts: Sequence[Recipient | None],
        department_name: str,
        actor_id: str | None,
    ) -> None:
        message = f"The ticket was escalated to <b>{escape(department_name)}</b> and awaits approval."
        await self._dispatch(
            "ticket_escalated",
            contacts,
            f"[{notice.ticket_number}] Escalation requested",
            self._ticket_body(notice, message),
            exclude=actor_id,
        )

    @staticmethod
    def _ticket_body(notice: TicketNotice, message: str) -> str:
        return (
            f"<p>{message}</p>"
            "<ul>"
            f"<li>Ticket: {escape(notice.ticket_number)}</li>"
            f"<li>Title: {escape(notice.title)}</li>"
            f"<li>Status: {escape(notice.status)}</li>"
            f"<li>Priority: {escape(notice.priority)}</li>"
            "</ul>"
        )

    @staticmethod
    def select_recipients(
        candidates: Iterable[Recipient | None], *, exclude: str | None = None
    ) -> list[Recipient]:
        """Drop missing, addressless, excluded and duplicate recipients."""

        selected: list[Recipient] = []
        seen: set[str] = set()
        for candidate in candidates:
            if candidate is None or not candidate.email:
                continue
            if exclude is not None and candidate.id == exclude:
                continue
            address = candidate.email.lower()
            if address in seen:
                continue
            seen.add(address)
            selected.append(candidate)
        return selected

    async def _dispatch(
        self,
        kind: str,
        candidates: Iterable[Recipient | None],
        subject: str,
        html_body: str,
        *,
        exclude: str | None = None,
    ) -> None:
        sent = self._metrics.counter("notifications_sent_total", label_names=("kind",))
        failed = self._metrics.counter("notifications_failed_total", label_names=("kind",))
        for recipient in self.select_recipients(candidates, exclude=exclude):
            try:
                await self._sender.send(recipient.email or "", subject, html_body)
            except Exception:
                failed.inc(labels={"kind": kind})
                logger.exception("Failed to send %s notification to %s", kind, recipient.email)
            else:
                sent.inc(labels={"kind": kind})
