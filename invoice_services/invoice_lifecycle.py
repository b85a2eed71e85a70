"""
invoice_services.invoice_lifecycle -- Submission and decision orchestration.

Responsibility:
    Run each business action end to end, in a fixed order:

        submit:  RBAC -> validate -> allocate number -> insert (bounded retry
                 on duplicate number) -> commit -> audit -> notify
        decide:  RBAC -> comment rule -> load + lock -> workflow engine ->
                 save -> commit -> audit -> notify

Architecture position:
    Services layer.  The only place that combines the allocator, the
    workflow engine, persistence, the audit recorder and the notifier.

Invariants enforced:
    - The invoice number is allocated before the invoice transaction opens,
      so the counter row lock is never held across the insert.
    - Every create attempt builds a brand-new aggregate from a fresh number.
    - A stale aggregate is never re-saved: concurrent decisions surface as
      OptimisticLockError and the caller reloads.
    - Audit and notification run after commit and never fail the action.

Failure modes:
    - PermissionDeniedError, InvoiceValidationError,
      RejectionCommentRequiredError before any write.
    - Every WorkflowError from the engine, unchanged.
    - InvoiceNotFoundError, OptimisticLockError,
      InvoiceNumberAllocationExhaustedError.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from invoice_engines.workflow import WorkflowEngine
from invoice_kernel.db.engine import session_scope
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.invoice import (
    DEFAULT_CURRENCY,
    MAX_DESCRIPTION_LENGTH,
    Actor,
    ApprovalAction,
    Invoice,
)
from invoice_kernel.exceptions import (
    DuplicateInvoiceNumberError,
    InvoiceNotFoundError,
    InvoiceNumberAllocationExhaustedError,
    InvoiceValidationError,
    OptimisticLockError,
    PermissionDeniedError,
    RejectionCommentRequiredError,
)
from invoice_kernel.logging_config import LogContext, get_logger
from invoice_kernel.models.audit_event import AuditAction
from invoice_kernel.models.invoice import InvoiceModel
from invoice_kernel.selectors.invoice_selector import InvoiceSelector
from invoice_kernel.services.auditor_service import AuditorService, AuditPage, AuditQuery
from invoice_services.audit_recorder import AuditEntry, AuditRecorder
from invoice_services.invoice_number_allocator import (
    InvoiceNumberAllocator,
    period_key_for,
)
from invoice_services.notification import NotificationDispatcher, NotificationEvent
from invoice_services.rbac_authority import (
    AUDIT_VIEW,
    INVOICE_DECIDE,
    INVOICE_SUBMIT,
    INVOICE_VIEW_ALL,
    INVOICE_VIEW_OWN,
    SEQUENCE_ADMIN,
    check_permission,
    require_permission,
)

if TYPE_CHECKING:
    from invoice_config.schema import AppConfig

logger = get_logger("services.invoice_lifecycle")

DEFAULT_MAX_CREATE_ATTEMPTS = 3
MAX_VENDOR_NAME_LENGTH = 255
_CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

# Constraint names as reported by PostgreSQL and SQLite respectively
_INVOICE_NUMBER_CONFLICT_MARKERS = ("uq_invoice_number", "invoices.invoice_number")
_EVENT_POSITION_CONFLICT_MARKERS = (
    "uq_approval_events_position",
    "approval_events.invoice_id, approval_events.position",
)

_DECISION_AUDIT_ACTIONS = {
    ApprovalAction.APPROVE: (AuditAction.INVOICE_APPROVED, NotificationEvent.INVOICE_APPROVED),
    ApprovalAction.REJECT: (AuditAction.INVOICE_REJECTED, NotificationEvent.INVOICE_REJECTED),
}


@dataclass(frozen=True)
class InvoiceSubmission:
    """Fields an employee supplies when uploading an invoice."""

    vendor_name: str
    amount: Decimal | str | int
    invoice_date: date | str
    currency: str = DEFAULT_CURRENCY
    description: str | None = None
    file_path: str | None = None


def _integrity_conflict(exc: IntegrityError, markers: tuple[str, ...]) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return any(marker in message for marker in markers)


def validate_submission(submission: InvoiceSubmission) -> InvoiceSubmission:
    """
    Normalize and validate submission fields.

    Returns a new InvoiceSubmission with a stripped vendor name, a Decimal
    amount, a ``date`` and an upper-case currency code.

    Raises:
        InvoiceValidationError: naming the first invalid field.
    """
    vendor_name = submission.vendor_name.strip() if isinstance(submission.vendor_name, str) else ""
    if not vendor_name:
        raise InvoiceValidationError("vendor_name", "is required")
    if len(vendor_name) > MAX_VENDOR_NAME_LENGTH:
        raise InvoiceValidationError(
            "vendor_name", f"exceeds {MAX_VENDOR_NAME_LENGTH} characters"
        )

    if isinstance(submission.amount, (bool, float)):
        raise InvoiceValidationError("amount", "must be a Decimal, int or numeric string")
    try:
        amount = Decimal(str(submission.amount).strip())
    except (InvalidOperation, ValueError):
        raise InvoiceValidationError("amount", "is not a number") from None
    if not amount.is_finite() or amount <= 0:
        raise InvoiceValidationError("amount", "must be a positive number")

    invoice_date = submission.invoice_date
    if isinstance(invoice_date, datetime):
        invoice_date = invoice_date.date()
    elif isinstance(invoice_date, str):
        try:
            invoice_date = date.fromisoformat(invoice_date.strip())
        except ValueError:
            raise InvoiceValidationError("invoice_date", "must be an ISO date (YYYY-MM-DD)") from None
    elif not isinstance(invoice_date, date):
        raise InvoiceValidationError("invoice_date", "is required")

    currency = (submission.currency or DEFAULT_CURRENCY).strip().upper()
    if not _CURRENCY_PATTERN.match(currency):
        raise InvoiceValidationError("currency", "must be a three-letter ISO code")

    description = submission.description
    if description is not None:
        description = description.strip() or None
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvoiceValidationError(
            "description", f"exceeds {MAX_DESCRIPTION_LENGTH} characters"
        )

    return InvoiceSubmission(
        vendor_name=vendor_name,
        amount=amount,
        invoice_date=invoice_date,
        currency=currency,
        description=description,
        file_path=submission.file_path or None,
    )


class InvoiceLifecycleService:
    """
    Orchestrates invoice submission and approval decisions.

    Each public method owns its transactions; callers pass actors, not
    sessions.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        allocator: InvoiceNumberAllocator,
        engine: WorkflowEngine | None = None,
        audit_recorder: AuditRecorder | None = None,
        notifier: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        max_create_attempts: int = DEFAULT_MAX_CREATE_ATTEMPTS,
        require_rejection_comment: bool = True,
        period_format: str = "%Y",
    ):
        if max_create_attempts < 1:
            raise ValueError("max_create_attempts must be at least 1")
        self._session_factory = session_factory
        self._allocator = allocator
        self._clock = clock or SystemClock()
        self._engine = engine or WorkflowEngine(self._clock)
        self._audit = audit_recorder or AuditRecorder(session_factory, self._clock)
        self._notifier = notifier or NotificationDispatcher()
        self._max_create_attempts = max_create_attempts
        self._require_rejection_comment = require_rejection_comment
        self._period_format = period_format

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        session_factory: sessionmaker[Session],
        allocator: InvoiceNumberAllocator,
        **kwargs,
    ) -> InvoiceLifecycleService:
        return cls(
            session_factory,
            allocator,
            max_create_attempts=config.workflow.max_create_attempts,
            require_rejection_comment=config.workflow.require_rejection_comment,
            period_format=config.numbering.period_format,
            **kwargs,
        )

    # Submission

    def submit(
        self,
        actor: Actor,
        submission: InvoiceSubmission,
        source_ip: str | None = None,
    ) -> Invoice:
        """
        Create a PENDING invoice with a freshly allocated number.

        Raises:
            PermissionDeniedError, InvoiceValidationError,
            InvoiceNumberAllocationExhaustedError.
        """
        require_permission(actor, INVOICE_SUBMIT)
        fields = validate_submission(submission)

        with LogContext.bind(actor_id=actor.id):
            now = self._clock.now()
            period_key = period_key_for(now, self._period_format)

            last_number: str | None = None
            invoice: Invoice | None = None
            for attempt in range(1, self._max_create_attempts + 1):
                last_number = self._allocator.next_id(period_key)
                candidate = Invoice(
                    invoice_number=last_number,
                    vendor_name=fields.vendor_name,
                    amount=fields.amount,
                    currency=fields.currency,
                    invoice_date=fields.invoice_date,
                    description=fields.description,
                    file_path=fields.file_path,
                    submitted_by=actor.id,
                    created_at=now,
                )
                try:
                    self._insert(candidate)
                except DuplicateInvoiceNumberError:
                    logger.warning(
                        "invoice_number_conflict_retry",
                        extra={"invoice_number": last_number, "attempt": attempt},
                    )
                    continue
                invoice = candidate
                break

            if invoice is None:
                logger.error(
                    "invoice_number_allocation_exhausted",
                    extra={"attempts": self._max_create_attempts, "invoice_number": last_number},
                )
                raise InvoiceNumberAllocationExhaustedError(
                    self._max_create_attempts, last_number
                )

            logger.info(
                "invoice_submitted",
                extra={
                    "invoice_number": invoice.invoice_number,
                    "amount": invoice.amount,
                    "degraded_number": invoice.is_degraded_number,
                },
            )

            self._audit.record(
                AuditEntry(
                    action=AuditAction.INVOICE_SUBMITTED,
                    actor_id=actor.id,
                    actor_role=actor.role,
                    resource_type="invoice",
                    resource_id=invoice.invoice_number,
                    metadata={
                        "vendor_name": invoice.vendor_name,
                        "amount": invoice.amount,
                        "currency": invoice.currency,
                        "invoice_date": invoice.invoice_date,
                        "degraded_number": invoice.is_degraded_number,
                    },
                    timestamp=now,
                    source_ip=source_ip,
                )
            )
            self._notifier.dispatch(NotificationEvent.INVOICE_SUBMITTED, invoice, actor)
            return invoice

    def _insert(self, invoice: Invoice) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.add(InvoiceModel.from_domain(invoice))
                session.flush()
        except IntegrityError as exc:
            if _integrity_conflict(exc, _INVOICE_NUMBER_CONFLICT_MARKERS):
                raise DuplicateInvoiceNumberError(invoice.invoice_number) from exc
            raise

    # Decisions

    def approve(
        self,
        actor: Actor,
        invoice_number: str,
        comment: str | None = None,
        source_ip: str | None = None,
    ) -> Invoice:
        return self.decide(actor, invoice_number, ApprovalAction.APPROVE, comment, source_ip)

    def reject(
        self,
        actor: Actor,
        invoice_number: str,
        comment: str | None = None,
        source_ip: str | None = None,
    ) -> Invoice:
        return self.decide(actor, invoice_number, ApprovalAction.REJECT, comment, source_ip)

    def decide(
        self,
        actor: Actor,
        invoice_number: str,
        action: ApprovalAction | str,
        comment: str | None = None,
        source_ip: str | None = None,
    ) -> Invoice:
        """
        Apply one approve/reject decision and persist it.

        Raises:
            PermissionDeniedError, RejectionCommentRequiredError,
            InvoiceNotFoundError, any WorkflowError, OptimisticLockError.
        """
        require_permission(actor, INVOICE_DECIDE)
        if isinstance(comment, str):
            comment = comment.strip() or None

        with LogContext.bind(actor_id=actor.id, invoice_number=invoice_number):
            if (
                self._require_rejection_comment
                and action == ApprovalAction.REJECT
                and not comment
            ):
                raise RejectionCommentRequiredError(invoice_number)

            try:
                with session_scope(self._session_factory) as session:
                    model = InvoiceSelector(session).get_model(invoice_number, for_update=True)
                    if model is None:
                        raise InvoiceNotFoundError(invoice_number)
                    invoice = model.to_domain()
                    self._engine.apply_action(invoice, actor, action, comment)
                    model.apply_transition(invoice, invoice.last_event.occurred_at)
                    session.flush()
            except StaleDataError as exc:
                logger.warning("invoice_stale_save", extra={"invoice_number": invoice_number})
                raise OptimisticLockError("Invoice", invoice_number) from exc
            except IntegrityError as exc:
                if _integrity_conflict(exc, _EVENT_POSITION_CONFLICT_MARKERS):
                    logger.warning("invoice_stale_save", extra={"invoice_number": invoice_number})
                    raise OptimisticLockError("Invoice", invoice_number) from exc
                raise

            event = invoice.last_event
            audit_action, notification_event = _DECISION_AUDIT_ACTIONS[ApprovalAction(action)]
            self._audit.record(
                AuditEntry(
                    action=audit_action,
                    actor_id=actor.id,
                    actor_role=event.actor_role,
                    resource_type="invoice",
                    resource_id=invoice.invoice_number,
                    metadata={
                        "status": invoice.status,
                        "acted_as_role": event.acted_as_role,
                        "admin_override": event.is_admin_override,
                        "comment": comment,
                    },
                    timestamp=event.occurred_at,
                    source_ip=source_ip,
                )
            )
            self._notifier.dispatch(notification_event, invoice, actor)
            return invoice

    # Reads

    def get_invoice(self, actor: Actor, invoice_number: str) -> Invoice:
        """
        Load one invoice.  Roles without ``invoice.view_all`` see only
        their own submissions.
        """
        require_permission(actor, INVOICE_VIEW_OWN)
        with session_scope(self._session_factory) as session:
            invoice = InvoiceSelector(session).get_by_number(invoice_number)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_number)
        can_view_all, _ = check_permission(actor.role, INVOICE_VIEW_ALL)
        if not can_view_all and invoice.submitted_by != actor.id:
            raise PermissionDeniedError(actor.id, getattr(actor.role, "value", actor.role), INVOICE_VIEW_ALL)
        return invoice

    def pending_queue(self, actor: Actor) -> list[Invoice]:
        """Invoices waiting on the actor's role, oldest first."""
        require_permission(actor, INVOICE_DECIDE)
        with session_scope(self._session_factory) as session:
            return InvoiceSelector(session).pending_for_role(actor.role)

    def my_invoices(self, actor: Actor) -> list[Invoice]:
        require_permission(actor, INVOICE_VIEW_OWN)
        with session_scope(self._session_factory) as session:
            return InvoiceSelector(session).submitted_by(actor.id)

    def audit_log(self, actor: Actor, criteria: AuditQuery | None = None) -> AuditPage:
        require_permission(actor, AUDIT_VIEW)
        with session_scope(self._session_factory) as session:
            return AuditorService(session, self._clock).query(criteria)

    # Administration

    def reset_sequence(self, actor: Actor, period_key: str, value: int = 0) -> int:
        """
        Move the period's invoice-number counter.  Audited as SEQUENCE_RESET.

        Store errors propagate.
        """
        require_permission(actor, SEQUENCE_ADMIN)
        previous = self._allocator.current_value(period_key)
        self._allocator.reset(period_key, value)
        self._audit.record(
            AuditEntry(
                action=AuditAction.SEQUENCE_RESET,
                actor_id=actor.id,
                actor_role=actor.role,
                resource_type="sequence_counter",
                resource_id=self._allocator.counter_key(period_key),
                metadata={"previous_value": previous, "value": value},
                timestamp=self._clock.now(),
            )
        )
        return value
