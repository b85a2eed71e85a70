"""
Module: invoice_kernel.models.invoice
Responsibility: ORM persistence for invoices and their approval events.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - invoice_number is unique and write-once.
    - Optimistic concurrency: ``version`` is SQLAlchemy's version_id_col.
      Every transition touches ``last_action_at`` so the row is always
      dirty and the version always moves.
    - Approval events are append-only: UNIQUE(invoice_id, position) makes
      two writers appending the same slot collide.
    - Terminal invoices and approval events are protected by the ORM
      listeners in db/immutability.py.

Failure modes:
    - IntegrityError on duplicate invoice_number (translated by the
      lifecycle service to DuplicateInvoiceNumberError).
    - StaleDataError / IntegrityError on concurrent transition (translated
      to OptimisticLockError).
    - ImmutabilityViolationError on writes to terminal rows.

Audit relevance:
    The approval_events table is the decision record; the audit chain
    mirrors it with tamper evidence.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from invoice_kernel.db.base import Base, UUIDString
from invoice_kernel.domain.invoice import (
    ApprovalEvent,
    ApprovalOutcome,
    Invoice,
    InvoiceStatus,
    Role,
)


class InvoiceModel(Base):
    """Persistent invoice aggregate root.

    Guarantees:
        - invoice_number, submitted_by, file_path, amount, currency,
          vendor_name, invoice_date and created_at never change after insert.
        - status moves only PENDING -> APPROVED or PENDING -> REJECTED.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED')",
            name="ck_invoices_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_invoices_positive_amount"),
        Index("ix_invoices_status_created", "status", "created_at"),
        Index("ix_invoices_submitted_by", "submitted_by"),
    )

    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    invoice_date: Mapped[date] = mapped_column(nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    submitted_by: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value,
    )
    current_approver_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    last_action_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(nullable=False)

    events: Mapped[list["ApprovalEventModel"]] = relationship(
        "ApprovalEventModel",
        back_populates="invoice",
        order_by="ApprovalEventModel.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} status={self.status} v{self.version}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in (InvoiceStatus.APPROVED.value, InvoiceStatus.REJECTED.value)

    def to_domain(self) -> Invoice:
        """Convert ORM model to the domain aggregate."""
        return Invoice(
            invoice_number=self.invoice_number,
            vendor_name=self.vendor_name,
            amount=self.amount,
            currency=self.currency,
            invoice_date=self.invoice_date,
            description=self.description,
            file_path=self.file_path,
            submitted_by=self.submitted_by,
            status=InvoiceStatus(self.status),
            approval_history=[e.to_domain() for e in self.events],
            current_approver_id=self.current_approver_id,
            rejection_reason=self.rejection_reason,
            created_at=self.created_at,
        )

    @classmethod
    def from_domain(cls, invoice: Invoice) -> InvoiceModel:
        """Create ORM model (and its events) from a fresh aggregate."""
        model = cls(
            invoice_number=invoice.invoice_number,
            vendor_name=invoice.vendor_name,
            amount=invoice.amount,
            currency=invoice.currency,
            invoice_date=invoice.invoice_date,
            description=invoice.description,
            file_path=invoice.file_path,
            submitted_by=invoice.submitted_by,
            status=invoice.status.value,
            current_approver_id=invoice.current_approver_id,
            rejection_reason=invoice.rejection_reason,
            created_at=invoice.created_at,
        )
        for position, event in enumerate(invoice.approval_history):
            model.events.append(ApprovalEventModel.from_domain(event, position))
        return model

    def apply_transition(self, invoice: Invoice, occurred_at: datetime) -> int:
        """
        Copy an engine transition onto this row.

        Only the fields the engine owns are written, and only events past
        the persisted history are appended.

        Returns:
            Number of events appended.
        """
        self.status = invoice.status.value
        self.current_approver_id = invoice.current_approver_id
        self.rejection_reason = invoice.rejection_reason
        self.last_action_at = occurred_at

        persisted = len(self.events)
        new_events = invoice.approval_history[persisted:]
        for offset, event in enumerate(new_events):
            self.events.append(
                ApprovalEventModel.from_domain(event, persisted + offset)
            )
        return len(new_events)


class ApprovalEventModel(Base):
    """Persistent approval event. Append-only.

    Guarantees:
        - UNIQUE(invoice_id, position): one event per history slot.
    """

    __tablename__ = "approval_events"

    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "position",
            name="uq_approval_events_position",
        ),
        Index("ix_approval_events_actor", "actor_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    acted_as_role: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str | None] = mapped_column(String(500), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship(
        "InvoiceModel",
        back_populates="events",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalEvent #{self.position} {self.action} "
            f"by {self.actor_id} as {self.acted_as_role}>"
        )

    def to_domain(self) -> ApprovalEvent:
        return ApprovalEvent(
            action=ApprovalOutcome(self.action),
            actor_id=self.actor_id,
            actor_role=Role(self.actor_role),
            acted_as_role=Role(self.acted_as_role),
            occurred_at=self.occurred_at,
            comment=self.comment,
        )

    @classmethod
    def from_domain(cls, event: ApprovalEvent, position: int) -> ApprovalEventModel:
        return cls(
            position=position,
            action=event.action.value,
            actor_id=event.actor_id,
            actor_role=event.actor_role.value,
            acted_as_role=event.acted_as_role.value,
            comment=event.comment,
            occurred_at=event.occurred_at,
        )
