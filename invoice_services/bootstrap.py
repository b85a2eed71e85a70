"""
invoice_services.bootstrap -- Wires the lifecycle service from configuration.

All service construction for the CLI and for embedding applications goes
through ``build_lifecycle_service`` so that the allocator, workflow
engine, audit recorder and notifier share one clock and one session
factory.
"""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from invoice_config.schema import AppConfig
from invoice_engines.workflow import WorkflowEngine
from invoice_kernel.db.engine import get_session_factory
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.logging_config import get_logger
from invoice_services.audit_recorder import AuditRecorder
from invoice_services.invoice_lifecycle import InvoiceLifecycleService
from invoice_services.invoice_number_allocator import (
    InvoiceNumberAllocator,
    SqlSequenceCounterStore,
    prefix_from_template,
)
from invoice_services.notification import NotificationDispatcher

logger = get_logger("services.bootstrap")


def build_allocator(
    config: AppConfig,
    session_factory: sessionmaker[Session],
) -> InvoiceNumberAllocator:
    numbering = config.numbering
    return InvoiceNumberAllocator(
        SqlSequenceCounterStore(session_factory),
        counter_domain=numbering.counter_domain,
        prefix=prefix_from_template(numbering.prefix_template),
        padding=numbering.padding,
    )


def build_lifecycle_service(
    config: AppConfig,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
    notifier: NotificationDispatcher | None = None,
) -> InvoiceLifecycleService:
    """
    Assemble an InvoiceLifecycleService.

    Preconditions:
        The engine is initialized when ``session_factory`` is omitted.
    """
    session_factory = session_factory or get_session_factory()
    clock = clock or SystemClock()
    service = InvoiceLifecycleService.from_config(
        config,
        session_factory,
        build_allocator(config, session_factory),
        engine=WorkflowEngine(clock),
        audit_recorder=AuditRecorder(session_factory, clock),
        notifier=notifier,
        clock=clock,
    )
    logger.info(
        "lifecycle_service_built",
        extra={
            "config_checksum": config.checksum,
            "counter_domain": config.numbering.counter_domain,
        },
    )
    return service
