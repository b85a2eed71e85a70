"""ORM models for the invoice kernel."""

from invoice_kernel.models.audit_event import AuditAction, AuditEvent
from invoice_kernel.models.invoice import ApprovalEventModel, InvoiceModel


def import_all_models() -> None:
    """Register every mapped table on Base.metadata.

    SequenceCounter lives beside SequenceService, outside this package.
    """
    from invoice_kernel.services.sequence_service import SequenceCounter  # noqa: F401


__all__ = [
    "ApprovalEventModel",
    "AuditAction",
    "AuditEvent",
    "InvoiceModel",
    "import_all_models",
]
