#!/usr/bin/env python3
"""
Operator commands for the invoice approval kernel.

Usage:
    python3 scripts/invoice_admin.py init-db
    python3 scripts/invoice_admin.py sequence show 2026
    python3 scripts/invoice_admin.py sequence reset 2026 --value 0 --actor-id ops-1
    python3 scripts/invoice_admin.py audit verify
    python3 scripts/invoice_admin.py audit list --action INVOICE_REJECTED --day 2026-01-15
    python3 scripts/invoice_admin.py reconcile degraded

Configuration comes from get_active_config() (INVOICE_CONFIG_PATH,
DATABASE_URL).  --db-url overrides the configured database.
"""

import argparse
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

W = 72


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Invoice kernel administration")
    p.add_argument("--config", default=None, help="YAML config file (default: INVOICE_CONFIG_PATH or packaged defaults)")
    p.add_argument("--db-url", default=None, help="Database URL (overrides config)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables")

    seq = sub.add_parser("sequence", help="Invoice-number counters")
    seq_sub = seq.add_subparsers(dest="sequence_command", required=True)
    show = seq_sub.add_parser("show", help="Show the last issued value for a period")
    show.add_argument("period")
    reset = seq_sub.add_parser("reset", help="Set a period's counter (audited)")
    reset.add_argument("period")
    reset.add_argument("--value", type=int, default=0)
    reset.add_argument("--actor-id", required=True, help="Admin performing the reset")

    audit = sub.add_parser("audit", help="Audit trail")
    audit_sub = audit.add_subparsers(dest="audit_command", required=True)
    audit_sub.add_parser("verify", help="Validate the full hash chain")
    listing = audit_sub.add_parser("list", help="List audit events, newest first")
    listing.add_argument("--action", default=None)
    listing.add_argument("--actor-id", default=None)
    listing.add_argument("--role", default=None)
    listing.add_argument("--resource", default=None, help="Partial resource id")
    listing.add_argument("--day", type=date.fromisoformat, default=None, help="YYYY-MM-DD (UTC)")
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--page-size", type=int, default=50)

    recon = sub.add_parser("reconcile", help="Reconciliation reports")
    recon_sub = recon.add_subparsers(dest="reconcile_command", required=True)
    recon_sub.add_parser("degraded", help="Invoices numbered while the counter store was down")

    return p.parse_args(argv)


def _cmd_init_db(args, config, service) -> int:
    from invoice_kernel.db.engine import create_tables

    create_tables()
    print("  Tables created.")
    return 0


def _cmd_sequence(args, config, service) -> int:
    from invoice_kernel.domain.invoice import Actor, Role
    from invoice_services.bootstrap import build_allocator
    from invoice_kernel.db.engine import get_session_factory

    allocator = build_allocator(config, get_session_factory())
    key = allocator.counter_key(args.period)

    if args.sequence_command == "show":
        value = allocator.current_value(args.period)
        print(f"  {key}: {'(unset)' if value is None else value}")
        return 0

    service.reset_sequence(Actor(id=args.actor_id, role=Role.ADMIN), args.period, args.value)
    print(f"  {key} reset to {args.value}")
    return 0


def _cmd_audit(args, config, service) -> int:
    from invoice_kernel.db.engine import session_scope
    from invoice_kernel.exceptions import AuditChainBrokenError
    from invoice_kernel.services.auditor_service import AuditorService, AuditQuery

    with session_scope() as session:
        auditor = AuditorService(session)
        if args.audit_command == "verify":
            try:
                auditor.validate_chain()
            except AuditChainBrokenError as exc:
                print(f"  BROKEN at audit event {exc.audit_event_id}", file=sys.stderr)
                print(f"    expected: {exc.expected_hash}", file=sys.stderr)
                print(f"    actual:   {exc.actual_hash}", file=sys.stderr)
                return 2
            print("  Audit chain intact.")
            return 0

        page = auditor.query(
            AuditQuery(
                action=args.action,
                actor_id=args.actor_id,
                actor_role=args.role,
                resource_id_contains=args.resource,
                day=args.day,
                page=args.page,
                page_size=args.page_size,
            )
        )
        print(f"  {'Seq':>6}  {'When (UTC)':<20} {'Action':<20} {'Resource':<24}")
        print(f"  {'-' * 6}  {'-' * 20} {'-' * 20} {'-' * 24}")
        for event in page.events:
            when = event.occurred_at.strftime("%Y-%m-%d %H:%M:%S")
            print(f"  {event.seq:>6}  {when:<20} {event.action_value:<20} {event.resource_id:<24}")
        print()
        print(f"  Page {page.page}/{page.total_pages}  ({page.total} events)")
        return 0


def _cmd_reconcile(args, config, service) -> int:
    from invoice_kernel.db.engine import session_scope
    from invoice_kernel.selectors.invoice_selector import InvoiceSelector

    with session_scope() as session:
        invoices = InvoiceSelector(session).degraded_invoices()

    if not invoices:
        print("  No degraded invoice numbers.")
        return 0

    print("=" * W)
    print("DEGRADED INVOICE NUMBERS".center(W))
    print("=" * W)
    for invoice in invoices:
        print(
            f"  {invoice.invoice_number:<40} {invoice.status.value:<9} "
            f"{invoice.created_at.date().isoformat()}"
        )
    print()
    print(f"  Total: {len(invoices)}")
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "sequence": _cmd_sequence,
    "audit": _cmd_audit,
    "reconcile": _cmd_reconcile,
}


def main(argv=None) -> int:
    args = _parse_args(argv)

    from invoice_config import get_active_config
    from invoice_kernel.db.engine import init_engine_from_url, reset_engine
    from invoice_kernel.db.immutability import register_immutability_listeners
    from invoice_kernel.exceptions import InvoiceKernelError
    from invoice_kernel.logging_config import configure_logging
    from invoice_services.bootstrap import build_lifecycle_service

    config = get_active_config(args.config)
    configure_logging(level=config.logging.level)
    db_url = args.db_url or config.database.url

    try:
        init_engine_from_url(db_url, echo=config.database.echo, pool_size=config.database.pool_size)
    except Exception as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    register_immutability_listeners()
    try:
        service = build_lifecycle_service(config)
        return _COMMANDS[args.command](args, config, service)
    except InvoiceKernelError as exc:
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        reset_engine()


if __name__ == "__main__":
    sys.exit(main())
