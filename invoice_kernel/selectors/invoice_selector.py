"""
Module: invoice_kernel.selectors.invoice_selector
Responsibility: Read-only invoice queries: lookup by number, the approver
    pending queue, "my invoices" and degraded-number reconciliation.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and domain/ value objects.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only: no add, flush, delete or commit.
    - Results are domain ``Invoice`` aggregates, not ORM rows.
    - The pending queue encodes the same stage rule as the workflow
      engine's compute_expected_role, in SQL: no history means the manager
      stage; a single APPROVED event in the manager slot means finance.
"""

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, aliased

from invoice_kernel.domain.invoice import (
    OFFLINE_MARKER,
    ApprovalOutcome,
    Invoice,
    InvoiceStatus,
    Role,
)
from invoice_kernel.models.invoice import ApprovalEventModel, InvoiceModel


class InvoiceSelector:
    """
    Invoice read queries.

    The caller owns the session and its transaction scope.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_model(self, invoice_number: str, for_update: bool = False) -> InvoiceModel | None:
        """Load the ORM row, optionally locking it for a transition."""
        stmt = select(InvoiceModel).where(InvoiceModel.invoice_number == invoice_number)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_number(self, invoice_number: str) -> Invoice | None:
        model = self.get_model(invoice_number)
        return model.to_domain() if model is not None else None

    def pending_for_role(self, role: Role | str) -> list[Invoice]:
        """
        PENDING invoices waiting on ``role``, oldest first.

        Employees never approve and get an empty list.  Admins may act at
        either stage and see every pending invoice.
        """
        role = Role(role)
        if role == Role.EMPLOYEE:
            return []

        stmt = select(InvoiceModel).where(
            InvoiceModel.status == InvoiceStatus.PENDING.value
        )

        if role == Role.MANAGER:
            stmt = stmt.where(~InvoiceModel.events.any())
        elif role == Role.FINANCE:
            first = aliased(ApprovalEventModel)
            later = aliased(ApprovalEventModel)
            stmt = stmt.where(
                select(first.id)
                .where(
                    first.invoice_id == InvoiceModel.id,
                    first.position == 0,
                    first.action == ApprovalOutcome.APPROVED.value,
                    first.acted_as_role == Role.MANAGER.value,
                )
                .exists(),
                ~select(later.id)
                .where(and_(later.invoice_id == InvoiceModel.id, later.position > 0))
                .exists(),
            )

        stmt = stmt.order_by(InvoiceModel.created_at, InvoiceModel.invoice_number)
        return [m.to_domain() for m in self.session.execute(stmt).scalars().all()]

    def submitted_by(self, actor_id: str) -> list[Invoice]:
        """Invoices created by ``actor_id``, newest first."""
        rows = self.session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.submitted_by == actor_id)
            .order_by(InvoiceModel.created_at.desc(), InvoiceModel.invoice_number.desc())
        ).scalars().all()
        return [m.to_domain() for m in rows]

    def degraded_invoices(self) -> list[Invoice]:
        """Invoices numbered while the counter store was unavailable."""
        rows = self.session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.invoice_number.contains(f"-{OFFLINE_MARKER}-"))
            .order_by(InvoiceModel.created_at)
        ).scalars().all()
        return [m.to_domain() for m in rows]
