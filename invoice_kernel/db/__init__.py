"""Database layer for the invoice kernel."""

from invoice_kernel.db.base import Base, UTCDateTime, UUIDString
from invoice_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    is_postgres,
    reset_engine,
    session_scope,
)
from invoice_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)

__all__ = [
    "Base",
    "UTCDateTime",
    "UUIDString",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "is_postgres",
    "register_immutability_listeners",
    "reset_engine",
    "session_scope",
    "unregister_immutability_listeners",
]
