"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates immutable, hash-chained audit events for invoice submissions,
    decisions and counter resets.  Provides chain validation for tamper
    detection, per-resource traces and the filtered, paginated audit query
    used by reviewers.

Architecture position:
    Kernel > Services -- imperative shell, called by AuditRecorder
    (invoice_services) and by the admin CLI.

Invariants enforced:
    - Audit seq comes from SequenceService (never raw SQL max+1).
    - Chain integrity: ``hash = H(resource_type | resource_id | action |
      payload_hash | prev_hash)``.  ``payload_hash`` covers actor, role,
      timestamp, source IP and metadata.
    - Append-only: audit events are never modified or deleted (ORM
      listeners on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match stored hash,
      or prev_hash does not match the predecessor's hash.

Audit relevance:
    This IS the audit service.  Every audit event flows through
    ``record()`` which links it into the chain before persisting.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.exceptions import AuditChainBrokenError
from invoice_kernel.logging_config import get_logger
from invoice_kernel.models.audit_event import AuditAction, AuditEvent
from invoice_kernel.services.sequence_service import SequenceService
from invoice_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_event,
    hash_payload,
)

logger = get_logger("services.auditor")

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor_id: str
    actor_role: str
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one resource, in chain order."""

    resource_type: str
    resource_id: str
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def first_action(self) -> str | None:
        return self.entries[0].action if self.entries else None

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


@dataclass(frozen=True)
class AuditQuery:
    """
    Filters for ``AuditorService.query``.

    ``resource_id_contains`` is a case-insensitive substring match.  ``day``
    selects events whose UTC timestamp falls on that calendar date.
    """

    action: AuditAction | str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    resource_type: str | None = None
    resource_id_contains: str | None = None
    day: date | None = None
    page: int = 1
    page_size: int = 50


@dataclass(frozen=True)
class AuditPage:
    """One page of audit events, newest first."""

    events: tuple[AuditEvent, ...]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


def audit_payload(
    actor_id: str,
    actor_role: str,
    occurred_at: datetime,
    source_ip: str | None,
    metadata: dict[str, Any] | None,
) -> dict[str, Any]:
    """The content covered by ``payload_hash``."""
    return {
        "actor_id": actor_id,
        "actor_role": actor_role,
        "occurred_at": occurred_at,
        "source_ip": source_ip,
        "metadata": metadata or {},
    }


class AuditorService:
    """
    Creates and validates tamper-evident audit events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

        return last_event.hash if last_event else None

    def record(
        self,
        resource_type: str,
        resource_id: str,
        action: AuditAction,
        actor_id: str,
        actor_role: str,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        source_ip: str | None = None,
    ) -> AuditEvent:
        """
        Append an audit event to the chain.

        The audit counter row stays locked until the caller's transaction
        ends, so concurrent recorders link one after another.

        Postconditions:
            - A new ``AuditEvent`` row is flushed with the next audit seq and
              ``prev_hash`` equal to the previous event's ``hash``.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        occurred_at = occurred_at or self._clock.now()
        # Hash exactly what a reload will see: UTC timestamps, JSON-native metadata.
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        else:
            occurred_at = occurred_at.astimezone(timezone.utc)
        metadata = json.loads(canonicalize_json(metadata or {}))

        payload = audit_payload(actor_id, actor_role, occurred_at, source_ip, metadata)
        computed_payload_hash = hash_payload(payload)

        event_hash = hash_audit_event(
            resource_type=resource_type,
            resource_id=resource_id,
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action.value,
            actor_id=actor_id,
            actor_role=actor_role,
            occurred_at=occurred_at,
            source_ip=source_ip,
            payload=metadata,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )

        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "action": action.value,
                "seq": seq,
            },
        )

        return audit_event

    # Chain validation

    def _broken(self, event: AuditEvent, expected: str, actual: str) -> AuditChainBrokenError:
        logger.critical(
            "audit_chain_broken",
            extra={"seq": event.seq, "audit_event_id": str(event.id)},
        )
        return AuditChainBrokenError(str(event.id), expected, actual)

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Every stored ``payload_hash`` and ``hash`` is recomputed from the
        row, and every ``prev_hash`` is checked against its predecessor.

        Raises:
            AuditChainBrokenError: at the first event that fails.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        if not events:
            return True

        if events[0].prev_hash is not None:
            raise self._broken(events[0], "None", events[0].prev_hash)

        for i, event in enumerate(events):
            expected_payload_hash = hash_payload(
                audit_payload(
                    event.actor_id,
                    event.actor_role,
                    event.occurred_at,
                    event.source_ip,
                    event.payload,
                )
            )
            if event.payload_hash != expected_payload_hash:
                raise self._broken(event, expected_payload_hash, event.payload_hash)

            expected_hash = hash_audit_event(
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                action=event.action_value,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                raise self._broken(event, expected_hash, event.hash)

            if i > 0:
                expected_prev = events[i - 1].hash
                if event.prev_hash != expected_prev:
                    raise self._broken(event, expected_prev, event.prev_hash or "None")

        logger.info(
            "audit_chain_valid",
            extra={"event_count": len(events)},
        )
        return True

    # Trace and query methods

    def get_trace(self, resource_type: str, resource_id: str) -> AuditTrace:
        """All audit events for a resource, oldest first."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.resource_type == resource_type,
                AuditEvent.resource_id == resource_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action_value,
                occurred_at=event.occurred_at,
                actor_id=event.actor_id,
                actor_role=event.actor_role,
                payload=event.payload or {},
                hash=event.hash,
            )
            for event in events
        )

        return AuditTrace(
            resource_type=resource_type,
            resource_id=resource_id,
            entries=entries,
        )

    def query(self, criteria: AuditQuery | None = None) -> AuditPage:
        """
        Filtered, paginated audit listing, newest first.

        ``page`` is 1-based and clamped to at least 1.  ``page_size`` is
        clamped to 1..MAX_PAGE_SIZE.
        """
        criteria = criteria or AuditQuery()
        page = max(1, criteria.page)
        page_size = min(max(1, criteria.page_size), MAX_PAGE_SIZE)

        conditions = []
        if criteria.action is not None:
            conditions.append(
                AuditEvent.action == getattr(criteria.action, "value", criteria.action)
            )
        if criteria.actor_id:
            conditions.append(AuditEvent.actor_id == criteria.actor_id)
        if criteria.actor_role:
            conditions.append(AuditEvent.actor_role == criteria.actor_role)
        if criteria.resource_type:
            conditions.append(AuditEvent.resource_type == criteria.resource_type)
        if criteria.resource_id_contains:
            conditions.append(
                func.lower(AuditEvent.resource_id).contains(
                    criteria.resource_id_contains.lower(), autoescape=True
                )
            )
        if criteria.day is not None:
            start = datetime.combine(criteria.day, time.min, tzinfo=timezone.utc)
            conditions.append(AuditEvent.occurred_at >= start)
            conditions.append(AuditEvent.occurred_at < start + timedelta(days=1))

        total = self._session.execute(
            select(func.count()).select_from(AuditEvent).where(*conditions)
        ).scalar_one()

        events = self._session.execute(
            select(AuditEvent)
            .where(*conditions)
            .order_by(AuditEvent.seq.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars().all()

        return AuditPage(
            events=tuple(events),
            total=total,
            page=page,
            page_size=page_size,
        )

    def get_recent_events(self, limit: int = MAX_PAGE_SIZE) -> list[AuditEvent]:
        """Most recent audit events, newest first."""
        result = self._session.execute(
            select(AuditEvent)
            .order_by(AuditEvent.seq.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
