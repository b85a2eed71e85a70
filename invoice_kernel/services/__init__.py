"""Services for the invoice kernel (write side)."""

from invoice_kernel.services.auditor_service import (
    AuditorService,
    AuditPage,
    AuditQuery,
    AuditTrace,
    AuditTraceEntry,
)
from invoice_kernel.services.sequence_service import SequenceCounter, SequenceService

__all__ = [
    "AuditPage",
    "AuditQuery",
    "AuditTrace",
    "AuditTraceEntry",
    "AuditorService",
    "SequenceCounter",
    "SequenceService",
]
