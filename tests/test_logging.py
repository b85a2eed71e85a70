"""Tests for the structured logging system (invoice_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from invoice_kernel.domain.invoice import InvoiceStatus
from invoice_kernel.exceptions import InvoiceAlreadyFinalizedError
from invoice_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Give each test an unconfigured hierarchy, then restore the session setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


class TestStructuredFormatter:

    def test_envelope(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "invoice_kernel.test"
        assert "ts" in record

    def test_extra_fields_are_json_safe(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        audit_id = uuid4()
        get_logger("test").info(
            "invoice_submitted",
            extra={
                "amount": Decimal("1250.00"),
                "status": InvoiceStatus.PENDING,
                "audit_event_id": audit_id,
            },
        )

        record = _parse_all_logs(stream)[0]
        assert record["amount"] == "1250.00"
        assert record["status"] == "PENDING"
        assert record["audit_event_id"] == str(audit_id)

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InvoiceAlreadyFinalizedError("INV-2026-000001", "APPROVED")
        except InvoiceAlreadyFinalizedError:
            get_logger("test").error("decision_failed", exc_info=True)

        record = _parse_all_logs(stream)[0]
        assert record["exc_type"] == "InvoiceAlreadyFinalizedError"
        assert record["exc_code"] == "ALREADY_FINALIZED"
        assert record["exc_invoice_number"] == "INV-2026-000001"
        assert record["exc_status"] == "APPROVED"
        assert "Traceback" in record["traceback"]

    def test_level_filters(self):
        handler, stream = _make_handler()
        configure_logging(level="WARNING", handler=handler)
        logger = get_logger("test")
        logger.info("quiet")
        logger.warning("loud")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["loud"]


class TestLogContext:

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(actor_id="mgr-001", invoice_number="INV-2026-000001")
        get_logger("test").info("decided")

        record = _parse_all_logs(stream)[0]
        assert record["actor_id"] == "mgr-001"
        assert record["invoice_number"] == "INV-2026-000001"

    def test_bind_restores_previous_values(self):
        LogContext.set(actor_id="outer")
        with LogContext.bind(actor_id="inner", invoice_number="INV-1"):
            assert LogContext.get_all() == {"actor_id": "inner", "invoice_number": "INV-1"}
        assert LogContext.get_all() == {"actor_id": "outer"}

    def test_bind_ignores_none(self):
        with LogContext.bind(actor_id=None, correlation_id="c-1"):
            assert LogContext.get_all() == {"correlation_id": "c-1"}

    def test_clear(self):
        LogContext.set(request_id="r-1")
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestConfiguration:

    def test_configure_is_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        configure_logging(handler=_make_handler()[0])

        handlers = logging.getLogger("invoice_kernel").handlers
        assert handlers.count(handler) == 1
        assert [h for h in handlers if isinstance(h.formatter, StructuredFormatter)] == [handler]

    def test_hierarchy_does_not_propagate(self):
        configure_logging(handler=_make_handler()[0])
        assert logging.getLogger("invoice_kernel").propagate is False

    def test_reset(self):
        configure_logging(handler=_make_handler()[0])
        reset_logging()
        assert logging.getLogger("invoice_kernel").handlers == []

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            LogContext.set(tenant="acme")
