"""
invoice_services.notification -- Best-effort notifications on invoice events.

Responsibility:
    Tell interested parties that an invoice was submitted, approved or
    rejected.  Delivery (e-mail, chat) lives behind ``NotificationSender``;
    the default sender only logs.  Failures never reach the caller.

Architecture position:
    Services layer.  Invoked by InvoiceLifecycleService after commit and
    after the audit write.
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from invoice_kernel.domain.invoice import Actor, Invoice, InvoiceStatus, Role
from invoice_kernel.logging_config import get_logger

logger = get_logger("services.notification")


class NotificationEvent(str, Enum):
    INVOICE_SUBMITTED = "INVOICE_SUBMITTED"
    INVOICE_APPROVED = "INVOICE_APPROVED"
    INVOICE_REJECTED = "INVOICE_REJECTED"


_TITLES = {
    NotificationEvent.INVOICE_SUBMITTED: "New Invoice Submitted",
    NotificationEvent.INVOICE_APPROVED: "Invoice Approved",
    NotificationEvent.INVOICE_REJECTED: "Invoice Rejected",
}


@dataclass(frozen=True)
class NotificationMessage:
    """Rendered notification, independent of transport."""

    subject: str
    body: str
    recipient_roles: tuple[Role, ...]
    recipient_ids: tuple[str, ...]


def notification_audience(
    event: NotificationEvent, invoice: Invoice
) -> tuple[tuple[Role, ...], tuple[str, ...]]:
    """Who should hear about ``event``: (roles, user ids).

    A submission or a first-stage approval goes to the next stage's role.
    A final decision goes back to the submitter.
    """
    if event == NotificationEvent.INVOICE_SUBMITTED:
        return (Role.MANAGER,), ()
    if event == NotificationEvent.INVOICE_APPROVED and invoice.status == InvoiceStatus.PENDING:
        return (Role.FINANCE,), ()
    return (), (invoice.submitted_by,)


def render_notification(
    event: NotificationEvent, invoice: Invoice, actor: Actor | None
) -> NotificationMessage:
    """Plain-text message for ``event``."""
    title = _TITLES[NotificationEvent(event)]
    lines = [
        f"Invoice Notification: {title}",
        f"Invoice ID: {invoice.invoice_number}",
        f"Vendor:     {invoice.vendor_name}",
        f"Amount:     {invoice.amount:,.2f} {invoice.currency}",
        f"Date:       {invoice.invoice_date.isoformat()}",
        f"Status:     {invoice.status.value}",
    ]
    if actor is not None:
        lines.append(f"Action by:  {actor.id} ({getattr(actor.role, 'value', actor.role)})")
    if event == NotificationEvent.INVOICE_REJECTED and invoice.rejection_reason:
        lines.append(f"Reason:     {invoice.rejection_reason}")

    roles, ids = notification_audience(event, invoice)
    return NotificationMessage(
        subject=f"[Invoices] {title}: {invoice.invoice_number}",
        body="\n".join(lines),
        recipient_roles=roles,
        recipient_ids=ids,
    )


class NotificationSender(Protocol):
    def notify(self, event: NotificationEvent, invoice: Invoice, actor: Actor | None) -> None:
        ...


class LoggingNotificationSender:
    """Default sender: writes the rendered message to the log."""

    def notify(self, event: NotificationEvent, invoice: Invoice, actor: Actor | None) -> None:
        message = render_notification(event, invoice, actor)
        logger.info(
            "notification_sent",
            extra={
                "notification_event": NotificationEvent(event).value,
                "subject": message.subject,
                "recipient_roles": [r.value for r in message.recipient_roles],
                "recipient_ids": list(message.recipient_ids),
            },
        )


class NotificationDispatcher:
    """
    Fans an event out to every sender.

    Runs inline by default, or on ``executor`` when one is given.  A
    sender that raises is logged and skipped; the others still run.
    """

    def __init__(
        self,
        senders: Sequence[NotificationSender] | None = None,
        executor: Executor | None = None,
    ):
        self._senders = tuple(senders) if senders is not None else (LoggingNotificationSender(),)
        self._executor = executor

    def dispatch(self, event: NotificationEvent, invoice: Invoice, actor: Actor | None) -> None:
        for sender in self._senders:
            if self._executor is not None:
                try:
                    self._executor.submit(self._safe_notify, sender, event, invoice, actor)
                except Exception:
                    logger.error(
                        "notification_schedule_failed",
                        exc_info=True,
                        extra={"sender": type(sender).__name__},
                    )
            else:
                self._safe_notify(sender, event, invoice, actor)

    @staticmethod
    def _safe_notify(sender, event, invoice, actor) -> None:
        try:
            sender.notify(event, invoice, actor)
        except Exception:
            logger.error(
                "notification_failed",
                exc_info=True,
                extra={
                    "sender": type(sender).__name__,
                    "notification_event": NotificationEvent(event).value,
                    "invoice_number": invoice.invoice_number,
                },
            )
