"""
invoice_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the pure workflow engine
    (invoice_engines/) and the kernel's persistence, sequence and audit
    services.  This is the only layer that opens transactions on behalf of
    a business action.

Architecture position:
    Dependency direction:
        invoice_services/ -> invoice_engines/  (allowed)
        invoice_services/ -> invoice_kernel/   (allowed)
        invoice_engines/  -> invoice_services/ (FORBIDDEN)
        invoice_kernel/   -> invoice_services/ (FORBIDDEN)
"""

from invoice_services.audit_recorder import AuditEntry, AuditRecorder
from invoice_services.bootstrap import build_allocator, build_lifecycle_service
from invoice_services.invoice_lifecycle import (
    InvoiceLifecycleService,
    InvoiceSubmission,
    validate_submission,
)
from invoice_services.invoice_number_allocator import (
    InvoiceNumberAllocator,
    SequenceCounterStore,
    SqlSequenceCounterStore,
    is_degraded_invoice_number,
)
from invoice_services.notification import (
    LoggingNotificationSender,
    NotificationDispatcher,
    NotificationEvent,
)
from invoice_services.rbac_authority import (
    check_permission,
    require_any_role,
    require_permission,
)

__all__ = [
    "AuditEntry",
    "AuditRecorder",
    "InvoiceLifecycleService",
    "InvoiceNumberAllocator",
    "InvoiceSubmission",
    "LoggingNotificationSender",
    "NotificationDispatcher",
    "NotificationEvent",
    "SequenceCounterStore",
    "SqlSequenceCounterStore",
    "build_allocator",
    "build_lifecycle_service",
    "check_permission",
    "is_degraded_invoice_number",
    "require_any_role",
    "require_permission",
    "validate_submission",
]
