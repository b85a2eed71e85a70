"""
invoice_services.invoice_number_allocator -- Human-readable invoice numbers.

Responsibility:
    Produce unique, strictly increasing identifiers such as
    ``INV-2026-000042`` from a per-period counter, and fall back to
    collision-resistant random identifiers (``INV-2026-OFFLINE-<hex>``)
    when the counter store cannot be reached.

Architecture position:
    Services layer.  Wraps a ``SequenceCounterStore``; the production store
    runs each call in its own short transaction through the kernel's
    locked-row ``SequenceService``.

Invariants enforced:
    - One atomic increment per ``next_id`` call against the shared counter
      row.  No ``MAX(seq)+1``, no in-process counter.
    - An identifier is never reused: normal numbers end in digits only,
      degraded numbers carry the ``OFFLINE`` marker and 80 random bits.
    - ``next_id`` never raises for store trouble; only caller misuse raises.

Failure modes:
    - InvalidSequenceFormatError for bad padding, prefix or period key.
    - SequenceStoreUnavailableError from ``reset`` (maintenance fails loudly).
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from invoice_kernel.db.engine import session_scope
from invoice_kernel.domain.invoice import OFFLINE_MARKER
from invoice_kernel.exceptions import (
    InvalidSequenceFormatError,
    SequenceStoreUnavailableError,
)
from invoice_kernel.logging_config import get_logger
from invoice_kernel.services.sequence_service import SequenceService

logger = get_logger("services.invoice_number_allocator")

DEFAULT_COUNTER_DOMAIN = "invoice_number"
DEFAULT_PADDING = 6
MIN_PADDING = 1
MAX_PADDING = 12
# 10 random bytes -> 20 hex chars -> 80 bits
DEGRADED_TOKEN_BYTES = 10

PrefixSpec = str | Callable[[str], str]

_DEGRADED_PATTERN = re.compile(
    rf"^.+-{OFFLINE_MARKER}-[0-9A-F]{{{DEGRADED_TOKEN_BYTES * 2}}}$"
)


def default_prefix(period_key: str) -> str:
    return f"INV-{period_key}"


def prefix_from_template(template: str) -> Callable[[str], str]:
    """Build a prefix callable from a template such as ``"INV-{period}"``."""

    def _prefix(period_key: str) -> str:
        return template.format(period=period_key)

    return _prefix


def period_key_for(moment: datetime, period_format: str = "%Y") -> str:
    """Counter period for a timestamp (yearly by default)."""
    return moment.strftime(period_format)


def is_degraded_invoice_number(identifier: str) -> bool:
    """True for numbers allocated while the counter store was unavailable."""
    return isinstance(identifier, str) and bool(_DEGRADED_PATTERN.match(identifier))


class SequenceCounterStore(Protocol):
    """Atomic named counters."""

    def increment(self, key: str) -> int:
        """Atomically add one and return the new value.

        Raises SequenceStoreUnavailableError when the store is unreachable.
        """
        ...

    def peek(self, key: str) -> int | None:
        ...

    def set(self, key: str, value: int) -> int:
        ...


class SqlSequenceCounterStore:
    """
    Counter store backed by the ``sequence_counters`` table.

    Each call is its own transaction, so the counter row lock is held only
    for the increment and never across the invoice insert.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def increment(self, key: str) -> int:
        try:
            with session_scope(self._session_factory) as session:
                return SequenceService(session).next_value(key)
        except SQLAlchemyError as exc:
            raise SequenceStoreUnavailableError(key, str(exc)) from exc

    def peek(self, key: str) -> int | None:
        try:
            with session_scope(self._session_factory) as session:
                return SequenceService(session).current_value(key)
        except SQLAlchemyError as exc:
            raise SequenceStoreUnavailableError(key, str(exc)) from exc

    def set(self, key: str, value: int) -> int:
        try:
            with session_scope(self._session_factory) as session:
                SequenceService(session).reset(key, value)
            return value
        except SQLAlchemyError as exc:
            raise SequenceStoreUnavailableError(key, str(exc)) from exc


class InvoiceNumberAllocator:
    """
    Allocates invoice numbers.

    Usage:
        allocator = InvoiceNumberAllocator(SqlSequenceCounterStore(factory))
        allocator.next_id("2026")                 # "INV-2026-000001"
        allocator.next_id("2026", "ACME", 4)      # "ACME-0002"
    """

    def __init__(
        self,
        store: SequenceCounterStore,
        counter_domain: str = DEFAULT_COUNTER_DOMAIN,
        prefix: PrefixSpec = default_prefix,
        padding: int = DEFAULT_PADDING,
    ):
        _validate_prefix(prefix)
        _validate_padding(padding)
        self._store = store
        self._counter_domain = counter_domain
        self._prefix = prefix
        self._padding = padding

    def counter_key(self, period_key: str) -> str:
        return f"{self._counter_domain}:{period_key}"

    def next_id(
        self,
        period_key: str,
        prefix: PrefixSpec | None = None,
        padding: int | None = None,
    ) -> str:
        """
        Allocate the next identifier for ``period_key``.

        Never raises for store unavailability; returns a degraded
        identifier and logs a WARNING instead.

        Raises:
            InvalidSequenceFormatError: on misuse.
        """
        _validate_period_key(period_key)
        prefix = self._prefix if prefix is None else prefix
        padding = self._padding if padding is None else padding
        _validate_prefix(prefix)
        _validate_padding(padding)

        resolved_prefix = _resolve_prefix(prefix, period_key)
        key = self.counter_key(period_key)

        try:
            seq = self._store.increment(key)
        except SequenceStoreUnavailableError as exc:
            identifier = (
                f"{resolved_prefix}-{OFFLINE_MARKER}-"
                f"{secrets.token_hex(DEGRADED_TOKEN_BYTES).upper()}"
            )
            logger.warning(
                "invoice_number_degraded",
                extra={
                    "counter_key": key,
                    "invoice_number": identifier,
                    "reason": exc.reason,
                },
            )
            return identifier

        identifier = f"{resolved_prefix}-{seq:0{padding}d}"
        logger.debug(
            "invoice_number_allocated",
            extra={"counter_key": key, "seq": seq, "invoice_number": identifier},
        )
        return identifier

    def current_value(self, period_key: str) -> int | None:
        """Last value issued for the period, or None (unset or store down)."""
        _validate_period_key(period_key)
        try:
            return self._store.peek(self.counter_key(period_key))
        except SequenceStoreUnavailableError:
            logger.warning(
                "invoice_number_counter_unreadable",
                extra={"counter_key": self.counter_key(period_key)},
            )
            return None

    def reset(self, period_key: str, value: int = 0) -> int:
        """
        Set the period's counter.  Administrative.

        Raises:
            InvalidSequenceFormatError: on misuse.
            SequenceStoreUnavailableError: when the store is down.
        """
        _validate_period_key(period_key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidSequenceFormatError("value", "must be a non-negative integer")
        return self._store.set(self.counter_key(period_key), value)


def _validate_period_key(period_key) -> None:
    if not isinstance(period_key, str) or not period_key.strip():
        raise InvalidSequenceFormatError("period_key", "must be a non-empty string")


def _validate_padding(padding) -> None:
    if (
        isinstance(padding, bool)
        or not isinstance(padding, int)
        or not MIN_PADDING <= padding <= MAX_PADDING
    ):
        raise InvalidSequenceFormatError(
            "padding", f"must be an integer between {MIN_PADDING} and {MAX_PADDING}"
        )


def _validate_prefix(prefix) -> None:
    if callable(prefix):
        return
    if not isinstance(prefix, str) or not prefix:
        raise InvalidSequenceFormatError(
            "prefix", "must be a non-empty string or a callable(period_key)"
        )


def _resolve_prefix(prefix: PrefixSpec, period_key: str) -> str:
    resolved = prefix(period_key) if callable(prefix) else prefix
    if not isinstance(resolved, str) or not resolved:
        raise InvalidSequenceFormatError(
            "prefix", "callable must return a non-empty string"
        )
    return resolved
