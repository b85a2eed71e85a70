"""
Pure domain layer.

Invoice value objects and the clock abstraction, with NO dependencies on
the ORM, the database or I/O.
"""

from invoice_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from invoice_kernel.domain.invoice import (
    ACTION_OUTCOMES,
    APPROVAL_STAGES,
    DEFAULT_CURRENCY,
    MAX_COMMENT_LENGTH,
    MAX_DESCRIPTION_LENGTH,
    OFFLINE_MARKER,
    TERMINAL_STATUSES,
    Actor,
    ApprovalAction,
    ApprovalEvent,
    ApprovalOutcome,
    Invoice,
    InvoiceStatus,
    Role,
)

__all__ = [
    "ACTION_OUTCOMES",
    "APPROVAL_STAGES",
    "Actor",
    "ApprovalAction",
    "ApprovalEvent",
    "ApprovalOutcome",
    "Clock",
    "DEFAULT_CURRENCY",
    "DeterministicClock",
    "Invoice",
    "InvoiceStatus",
    "MAX_COMMENT_LENGTH",
    "MAX_DESCRIPTION_LENGTH",
    "OFFLINE_MARKER",
    "Role",
    "SystemClock",
    "TERMINAL_STATUSES",
]
