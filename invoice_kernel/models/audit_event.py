"""
Module: invoice_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners).
    - Hash chain integrity: hash = H(resource_type | resource_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is strictly increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEvent IS the audit trail.  Every submission, approval, rejection
    and counter reset produces one.  payload_hash covers the actor, role,
    timestamp, source IP and metadata, so editing any of them breaks the
    chain.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from invoice_kernel.db.base import Base


class AuditAction(str, Enum):
    """Auditable actions."""

    INVOICE_SUBMITTED = "INVOICE_SUBMITTED"
    INVOICE_APPROVED = "INVOICE_APPROVED"
    INVOICE_REJECTED = "INVOICE_REJECTED"
    SEQUENCE_RESET = "SEQUENCE_RESET"
    OTHER = "OTHER"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and strictly increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT compute hashes; AuditorService does.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    # e.g. "invoice", "sequence_counter"
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Business identifier (an invoice number, a counter name)
    resource_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    action: Mapped[AuditAction] = mapped_column(
        String(50),
        nullable=False,
    )

    actor_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    actor_role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    # IPv6 max textual length
    source_ip: Mapped[str | None] = mapped_column(
        String(45),
        nullable=True,
    )

    payload: Mapped[dict | None] = mapped_column(
        JSON,
        nullable=True,
    )

    payload_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    prev_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.action_value} on {self.resource_type}:{self.resource_id}>"

    @property
    def action_value(self) -> str:
        """Action as a plain string (loaded rows carry str, new rows the enum)."""
        if isinstance(self.action, AuditAction):
            return self.action.value
        return self.action

    @property
    def is_genesis(self) -> bool:
        """True iff this is the first event in the hash chain."""
        return self.prev_hash is None
