"""
Pytest fixtures for the invoice approval kernel test suite.

Provides:
- A fresh database per test (temporary SQLite file, or DATABASE_URL)
- Session factory, deterministic clock and wired lifecycle service
- Actors for every role and an in-memory invoice factory for engine tests
- Structured log capture

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL).  Tables
  are dropped and recreated for every test.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO

import pytest

from invoice_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from invoice_kernel.db.immutability import register_immutability_listeners
from invoice_kernel.domain.clock import DeterministicClock
from invoice_kernel.domain.invoice import Actor, Invoice, Role
from invoice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from invoice_engines.workflow import WorkflowEngine
from invoice_services.audit_recorder import AuditRecorder
from invoice_services.invoice_lifecycle import InvoiceLifecycleService, InvoiceSubmission
from invoice_services.invoice_number_allocator import (
    InvoiceNumberAllocator,
    SqlSequenceCounterStore,
)
from invoice_services.notification import NotificationDispatcher


EMPLOYEE_ID = "emp-001"
MANAGER_ID = "mgr-001"
FINANCE_ID = "fin-001"
ADMIN_ID = "adm-001"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture invoice_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle):
            lifecycle.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "invoice_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("invoice_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


def get_database_url(tmp_path) -> str:
    """DATABASE_URL from the environment, or a throwaway SQLite file."""
    return os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'invoices.db'}"


@pytest.fixture
def db_engine(tmp_path):
    """Engine with every table freshly created and immutability listeners on.

    Pool is large enough for the concurrency tests.
    """
    eng = init_engine_from_url(
        get_database_url(tmp_path),
        echo=False,
        pool_size=30, max_overflow=20, pool_timeout=10,
    )
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    try:
        drop_tables()
    finally:
        reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A plain session; rolled back and closed at teardown."""
    sess = session_factory()
    yield sess
    try:
        sess.rollback()
    finally:
        sess.close()


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def employee():
    return Actor(id=EMPLOYEE_ID, role=Role.EMPLOYEE)


@pytest.fixture
def manager():
    return Actor(id=MANAGER_ID, role=Role.MANAGER)


@pytest.fixture
def finance():
    return Actor(id=FINANCE_ID, role=Role.FINANCE)


@pytest.fixture
def admin():
    return Actor(id=ADMIN_ID, role=Role.ADMIN)


@pytest.fixture
def make_invoice():
    """Factory for in-memory PENDING invoices (no database)."""
    counter = 0

    def _make(submitted_by: str = EMPLOYEE_ID, **overrides) -> Invoice:
        nonlocal counter
        counter += 1
        fields = dict(
            invoice_number=f"INV-2026-{counter:06d}",
            vendor_name="Acme Supplies",
            amount=Decimal("1250.00"),
            submitted_by=submitted_by,
            invoice_date=date(2026, 1, 10),
            created_at=datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc),
        )
        fields.update(overrides)
        return Invoice(**fields)

    return _make


@pytest.fixture
def workflow_engine(clock):
    return WorkflowEngine(clock)


# =============================================================================
# Service fixtures
# =============================================================================


class RecordingSender:
    """Notification sender that keeps every call."""

    def __init__(self):
        self.sent = []

    def notify(self, event, invoice, actor):
        self.sent.append((event, invoice.invoice_number, invoice.status, actor))


@pytest.fixture
def recording_sender():
    return RecordingSender()


@pytest.fixture
def allocator(session_factory):
    return InvoiceNumberAllocator(SqlSequenceCounterStore(session_factory))


@pytest.fixture
def lifecycle(session_factory, allocator, clock, recording_sender):
    return InvoiceLifecycleService(
        session_factory,
        allocator,
        engine=WorkflowEngine(clock),
        audit_recorder=AuditRecorder(session_factory, clock),
        notifier=NotificationDispatcher([recording_sender]),
        clock=clock,
    )


@pytest.fixture
def submission():
    return InvoiceSubmission(
        vendor_name="Acme Supplies",
        amount=Decimal("1250.00"),
        invoice_date=date(2026, 1, 10),
        description="Office chairs",
    )
