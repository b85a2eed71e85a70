"""
invoice_services.audit_recorder -- Best-effort audit writes.

Responsibility:
    Record one audit entry per business action in its own transaction,
    after the business transaction has committed.  An audit failure is
    logged and never undoes or fails the action that was audited.

Architecture position:
    Services layer, over the kernel's hash-chained AuditorService.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from invoice_kernel.db.engine import session_scope
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.logging_config import get_logger
from invoice_kernel.models.audit_event import AuditAction, AuditEvent
from invoice_kernel.services.auditor_service import AuditorService

logger = get_logger("services.audit_recorder")


@dataclass(frozen=True)
class AuditEntry:
    """What happened, who did it, to what."""

    action: AuditAction
    actor_id: str
    actor_role: str
    resource_type: str
    resource_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime | None = None
    source_ip: str | None = None


class AuditRecorder:
    """Writes AuditEntry values to the audit chain. Never raises."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def record(self, entry: AuditEntry) -> AuditEvent | None:
        """Append ``entry`` to the chain; None if the write failed."""
        try:
            with session_scope(self._session_factory) as session:
                return AuditorService(session, self._clock).record(
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    action=AuditAction(entry.action),
                    actor_id=entry.actor_id,
                    actor_role=getattr(entry.actor_role, "value", entry.actor_role),
                    metadata=entry.metadata,
                    occurred_at=entry.timestamp,
                    source_ip=entry.source_ip,
                )
        except Exception:
            logger.error(
                "audit_record_failed",
                exc_info=True,
                extra={
                    "audit_action": getattr(entry.action, "value", entry.action),
                    "resource_type": entry.resource_type,
                    "resource_id": entry.resource_id,
                },
            )
            return None
