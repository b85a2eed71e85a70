"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

An approved or rejected invoice is a closed decision.  Neither its fields
nor its approval history may change afterwards, and the audit chain may
never change at all.  The workflow engine refuses such transitions; this
module makes the persistence layer refuse them too, so a bug or a script
that bypasses the engine still cannot rewrite history.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check our invariants:

    session.flush()
         |
         v
    [before_flush]  --> new ApprovalEvent on a terminal invoice? --> raise
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | When Immutable                   | What
----------------|----------------------------------|-----------------------------
Invoice         | ALWAYS                           | Write-once fields
Invoice         | After status = APPROVED/REJECTED | Every field; no delete
ApprovalEvent   | ALWAYS (from creation)           | No update, no delete
ApprovalEvent   | Parent invoice terminal          | No new rows appended
AuditEvent      | ALWAYS (from creation)           | No update, no delete

===============================================================================
DESIGN DECISIONS
===============================================================================

1. WHY CHECK "WAS TERMINAL" NOT "IS TERMINAL"?
   The engine's own transition sets status to APPROVED or REJECTED.  We
   allow PENDING -> terminal and block everything after it, reading the
   old value from SQLAlchemy's attribute history.

2. WHY INLINE IMPORTS?
   Avoids circular imports.  Models import from db, db imports from models.

===============================================================================
USAGE
===============================================================================

    from invoice_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
    # ... do forbidden operation ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from invoice_kernel.exceptions import ImmutabilityViolationError
from invoice_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_TERMINAL_STATUS_VALUES = frozenset({"APPROVED", "REJECTED"})

# Fields fixed at submission, regardless of status
INVOICE_WRITE_ONCE_FIELDS = frozenset({
    "invoice_number",
    "vendor_name",
    "amount",
    "currency",
    "invoice_date",
    "description",
    "file_path",
    "submitted_by",
    "created_at",
})


def _status_value(status) -> str:
    return getattr(status, "value", status)


def _invoice_was_terminal(target) -> bool:
    """True when the row was APPROVED/REJECTED before the pending changes."""
    status_history = get_history(target, "status")
    if status_history.deleted:
        return _status_value(status_history.deleted[0]) in _TERMINAL_STATUS_VALUES
    if not status_history.added:
        return _status_value(target.status) in _TERMINAL_STATUS_VALUES
    return False


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str, **fields):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            **fields,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _check_invoice_immutability(mapper, connection, target):
    """
    Block changes to write-once fields, and any change to a terminal invoice.
    """
    from invoice_kernel.models.invoice import InvoiceModel

    if not isinstance(target, InvoiceModel):
        return

    insp = inspect(target)

    for field in INVOICE_WRITE_ONCE_FIELDS:
        if insp.attrs[field].history.has_changes():
            raise _blocked(
                "Invoice", target.invoice_number, "UPDATE",
                f"Field '{field}' is write-once",
                field=field,
            )

    if _invoice_was_terminal(target):
        for attr in insp.attrs:
            if attr.key == "events":
                continue
            if attr.history.has_changes():
                raise _blocked(
                    "Invoice", target.invoice_number, "UPDATE",
                    f"Cannot modify field '{attr.key}' on finalized invoice",
                    field=attr.key,
                )


def _check_invoice_delete(mapper, connection, target):
    """Block deletion of terminal invoices."""
    from invoice_kernel.models.invoice import InvoiceModel

    if not isinstance(target, InvoiceModel):
        return

    if _invoice_was_terminal(target):
        raise _blocked(
            "Invoice", target.invoice_number, "DELETE",
            "Finalized invoices cannot be deleted",
        )


def _check_approval_event_immutability(mapper, connection, target):
    """Approval events are append-only."""
    from invoice_kernel.models.invoice import ApprovalEventModel

    if not isinstance(target, ApprovalEventModel):
        return

    raise _blocked(
        "ApprovalEvent", str(target.id), "UPDATE",
        "Approval events are immutable and cannot be modified",
    )


def _check_approval_event_delete(mapper, connection, target):
    from invoice_kernel.models.invoice import ApprovalEventModel

    if not isinstance(target, ApprovalEventModel):
        return

    raise _blocked(
        "ApprovalEvent", str(target.id), "DELETE",
        "Approval events cannot be deleted",
    )


def _check_event_append_before_flush(session, flush_context, instances):
    """
    Block appending approval events to an invoice that was already terminal.

    Runs in before_flush because the parent's status history is still
    available there; mapper-level insert events see the post-flush state.
    """
    from invoice_kernel.models.invoice import ApprovalEventModel

    for obj in session.new:
        if not isinstance(obj, ApprovalEventModel):
            continue
        parent = obj.invoice
        if parent is None or parent in session.new:
            continue
        if _invoice_was_terminal(parent):
            raise _blocked(
                "Invoice", parent.invoice_number, "INSERT",
                "Cannot append approval events to a finalized invoice",
            )


def _check_audit_event_immutability(mapper, connection, target):
    """Audit events are always immutable."""
    from invoice_kernel.models.audit_event import AuditEvent

    if not isinstance(target, AuditEvent):
        return

    raise _blocked(
        "AuditEvent", str(target.id), "UPDATE",
        "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    from invoice_kernel.models.audit_event import AuditEvent

    if not isinstance(target, AuditEvent):
        return

    raise _blocked(
        "AuditEvent", str(target.id), "DELETE",
        "Audit events cannot be deleted",
    )


def _listeners():
    from invoice_kernel.models.audit_event import AuditEvent
    from invoice_kernel.models.invoice import ApprovalEventModel, InvoiceModel

    return (
        (Session, "before_flush", _check_event_append_before_flush),
        (InvoiceModel, "before_update", _check_invoice_immutability),
        (InvoiceModel, "before_delete", _check_invoice_delete),
        (ApprovalEventModel, "before_update", _check_approval_event_immutability),
        (ApprovalEventModel, "before_delete", _check_approval_event_delete),
        (AuditEvent, "before_update", _check_audit_event_immutability),
        (AuditEvent, "before_delete", _check_audit_event_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent.  Call after models are imported and before any database
    operations begin.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must violate immutability rules
    on purpose to verify detection (e.g. audit chain tampering).
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
