"""
Invoice domain types (``invoice_kernel.domain.invoice``).

Responsibility
--------------
Pure value objects for the two-stage approval workflow: roles, statuses,
actions, the frozen ``ApprovalEvent`` and the mutable ``Invoice`` aggregate
that the workflow engine transitions.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``approval_history`` is append-only.  Events are frozen; the engine only
  ever appends.
* ``APPROVED`` and ``REJECTED`` are terminal.  ``TERMINAL_STATUSES`` is the
  single definition used by the engine, the ORM listeners and the selectors.
* Stage order is fixed: ``manager`` then ``finance``.  ``admin`` may occupy
  either slot; ``employee`` never approves.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class Role(str, Enum):
    """Closed set of actor roles."""

    EMPLOYEE = "employee"
    MANAGER = "manager"
    FINANCE = "finance"
    ADMIN = "admin"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.APPROVED,
    InvoiceStatus.REJECTED,
})


class ApprovalAction(str, Enum):
    """Requested decision."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ApprovalOutcome(str, Enum):
    """Recorded outcome of a decision, as stored on an ``ApprovalEvent``."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


ACTION_OUTCOMES: dict[ApprovalAction, ApprovalOutcome] = {
    ApprovalAction.APPROVE: ApprovalOutcome.APPROVED,
    ApprovalAction.REJECT: ApprovalOutcome.REJECTED,
}

# Stage slots in order.  The graph is fixed.
APPROVAL_STAGES: tuple[Role, ...] = (Role.MANAGER, Role.FINANCE)

DEFAULT_CURRENCY = "USD"
MAX_COMMENT_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 1000
OFFLINE_MARKER = "OFFLINE"


@dataclass(frozen=True)
class Actor:
    """The authenticated identity performing an action."""

    id: str
    role: Role


@dataclass(frozen=True)
class ApprovalEvent:
    """
    One decision in an invoice's approval history.

    ``actor_role`` is the actor's real role.  ``acted_as_role`` is the stage
    slot the decision occupied; they differ only for admin overrides.
    """

    action: ApprovalOutcome
    actor_id: str
    actor_role: Role
    acted_as_role: Role
    occurred_at: datetime
    comment: str | None = None

    @property
    def is_admin_override(self) -> bool:
        return self.actor_role == Role.ADMIN


@dataclass
class Invoice:
    """
    Invoice aggregate.

    Mutable only through ``WorkflowEngine.apply_action``; every other field
    is fixed at creation.
    """

    invoice_number: str
    vendor_name: str
    amount: Decimal
    submitted_by: str
    invoice_date: date
    created_at: datetime
    currency: str = DEFAULT_CURRENCY
    description: str | None = None
    file_path: str | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    approval_history: list[ApprovalEvent] = field(default_factory=list)
    current_approver_id: str | None = None
    rejection_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_event(self) -> ApprovalEvent | None:
        return self.approval_history[-1] if self.approval_history else None

    @property
    def is_degraded_number(self) -> bool:
        """True when the number was allocated while the counter store was down."""
        return f"-{OFFLINE_MARKER}-" in self.invoice_number
