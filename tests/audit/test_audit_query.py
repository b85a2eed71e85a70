"""
Audit query tests.

Verifies:
- Filters: action, actor, role, resource type, partial resource id, day
- Pagination: newest first, page clamping, page size cap
- AuditRecorder never raises
"""

from datetime import date, datetime, timezone

import pytest

from invoice_kernel.db.engine import session_scope
from invoice_kernel.models.audit_event import AuditAction
from invoice_kernel.services.auditor_service import MAX_PAGE_SIZE, AuditorService, AuditQuery
from invoice_services.audit_recorder import AuditEntry, AuditRecorder


def query(session_factory, **criteria):
    with session_scope(session_factory) as session:
        return AuditorService(session).query(AuditQuery(**criteria))


@pytest.fixture
def audit_trail(session_factory, clock):
    recorder = AuditRecorder(session_factory, clock)
    rows = [
        (AuditAction.INVOICE_SUBMITTED, "emp-001", "employee", "INV-2026-000001", datetime(2026, 1, 14, 23, 59, tzinfo=timezone.utc)),
        (AuditAction.INVOICE_SUBMITTED, "emp-002", "employee", "INV-2026-000002", datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)),
        (AuditAction.INVOICE_APPROVED, "mgr-001", "manager", "INV-2026-000001", datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)),
        (AuditAction.INVOICE_REJECTED, "mgr-001", "manager", "INV-2026-000002", datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)),
        (AuditAction.SEQUENCE_RESET, "adm-001", "admin", "invoice_number:2026", datetime(2026, 1, 16, 0, 0, tzinfo=timezone.utc)),
    ]
    for action, actor_id, role, resource_id, when in rows:
        recorder.record(
            AuditEntry(
                action=action,
                actor_id=actor_id,
                actor_role=role,
                resource_type="sequence_counter" if action == AuditAction.SEQUENCE_RESET else "invoice",
                resource_id=resource_id,
                timestamp=when,
            )
        )
    return rows


class TestFilters:

    def test_no_filters_newest_first(self, session_factory, audit_trail):
        page = query(session_factory)
        assert page.total == 5
        assert [e.seq for e in page.events] == [5, 4, 3, 2, 1]

    def test_by_action(self, session_factory, audit_trail):
        page = query(session_factory, action=AuditAction.INVOICE_SUBMITTED)
        assert page.total == 2
        assert query(session_factory, action="INVOICE_REJECTED").total == 1

    def test_by_actor_and_role(self, session_factory, audit_trail):
        assert query(session_factory, actor_id="mgr-001").total == 2
        assert query(session_factory, actor_role="admin").total == 1

    def test_by_resource_type(self, session_factory, audit_trail):
        assert query(session_factory, resource_type="sequence_counter").total == 1

    def test_partial_resource_id_is_case_insensitive(self, session_factory, audit_trail):
        page = query(session_factory, resource_id_contains="inv-2026-000001")
        assert page.total == 2
        assert query(session_factory, resource_id_contains="0000").total == 4

    def test_partial_resource_id_escapes_wildcards(self, session_factory, audit_trail):
        assert query(session_factory, resource_id_contains="%").total == 0
        assert query(session_factory, resource_id_contains="_").total == 1

    def test_by_day_uses_utc_bounds(self, session_factory, audit_trail):
        page = query(session_factory, day=date(2026, 1, 15))
        assert page.total == 3
        assert {e.seq for e in page.events} == {2, 3, 4}

    def test_combined_filters(self, session_factory, audit_trail):
        page = query(session_factory, actor_id="mgr-001", day=date(2026, 1, 15), action="INVOICE_APPROVED")
        assert page.total == 1
        assert page.events[0].resource_id == "INV-2026-000001"


class TestPagination:

    def test_pages(self, session_factory, audit_trail):
        first = query(session_factory, page=1, page_size=2)
        third = query(session_factory, page=3, page_size=2)

        assert [e.seq for e in first.events] == [5, 4]
        assert [e.seq for e in third.events] == [1]
        assert first.total_pages == 3

    def test_page_clamped_to_one(self, session_factory, audit_trail):
        page = query(session_factory, page=0, page_size=2)
        assert page.page == 1
        assert [e.seq for e in page.events] == [5, 4]

    def test_page_size_capped(self, session_factory, audit_trail):
        assert query(session_factory, page_size=10_000).page_size == MAX_PAGE_SIZE
        assert query(session_factory, page_size=0).page_size == 1

    def test_page_past_end_is_empty(self, session_factory, audit_trail):
        page = query(session_factory, page=9, page_size=2)
        assert page.events == ()
        assert page.total == 5

    def test_empty_total_pages(self, session_factory):
        assert query(session_factory).total_pages == 0


class TestRecorder:

    def test_recent_events(self, session_factory, audit_trail):
        with session_scope(session_factory) as session:
            recent = AuditorService(session).get_recent_events(limit=2)
        assert [e.seq for e in recent] == [5, 4]

    def test_recorder_swallows_failures(self, session_factory, clock, captured_logs):
        recorder = AuditRecorder(session_factory, clock)

        result = recorder.record(
            AuditEntry(
                action="NOT_AN_ACTION",
                actor_id="x",
                actor_role="admin",
                resource_type="invoice",
                resource_id="INV-1",
            )
        )

        assert result is None
        failures = [r for r in captured_logs() if r["message"] == "audit_record_failed"]
        assert failures[0]["level"] == "ERROR"
        assert failures[0]["audit_action"] == "NOT_AN_ACTION"
