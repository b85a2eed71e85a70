"""
SequenceService -- monotonic counters via locked rows.

Responsibility:
    Hands out strictly increasing integers for named counters: one per
    invoice-number period (``invoice_number:2026``) and one for the audit
    chain (``audit_event``).  Each counter is a single row that is locked
    with ``SELECT ... FOR UPDATE`` while it is incremented.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService (audit sequence) and by
    SqlSequenceCounterStore in invoice_services (invoice numbers).

Invariants enforced:
    - The locked counter row is the only source of the next value.
      Aggregate ``MAX(seq) + 1`` queries are never used.
    - The increment becomes visible only when the caller's transaction
      commits.  A rollback returns the value.

Failure modes:
    - IntegrityError: two writers create the same counter row at once
      (handled via savepoint rollback and retry).

Audit relevance:
    Allocation is logged at DEBUG with sequence_name and value.  Resets
    are logged at WARNING because they are the only way a counter moves
    backwards.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from invoice_kernel.db.base import Base
from invoice_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    One row per named counter.  Row-level locking keeps the value strictly
    increasing under concurrent writers.
    """

    __tablename__ = "sequence_counters"

    # Counter name (e.g. "invoice_number:2026", "audit_event")
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Transactional counter allocation.

    Contract:
        ``next_value(name)`` returns a value strictly greater than any value
        previously committed for that name.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        with session_scope() as session:
            seq = SequenceService(session).next_value("invoice_number:2026")
    """

    AUDIT_EVENT = "audit_event"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock, increment and return the named counter.

        Creates the counter at 1 on first use.

        Preconditions:
            - ``sequence_name`` is a non-empty string.
            - The caller is within an active database transaction.

        Postconditions:
            - Returns an integer > 0, strictly greater than any value
              previously committed for this name.
            - The counter row stays locked until the transaction completes.
        """
        # Counter rows must be read fresh; sessions use expire_on_commit=False.
        self._session.expire_all()

        counter = self._locked_counter(sequence_name)

        if counter is None:
            # Savepoint so a lost creation race does not roll back the caller's work
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                self._session.expire_all()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """
        Read a counter without incrementing it.

        Returns:
            Current value, or None if the counter does not exist.
        """
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def reset(self, sequence_name: str, value: int = 0) -> None:
        """
        Set a counter to a specific value.

        Administrative only.  Moving a counter below a value already issued
        makes the next allocations collide with existing invoice numbers;
        the lifecycle service's bounded retry absorbs that, nothing else does.
        """
        counter = self._locked_counter(sequence_name)

        previous = counter.current_value if counter is not None else None
        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=value)
            self._session.add(counter)
        else:
            counter.current_value = value

        self._session.flush()
        logger.warning(
            "sequence_reset",
            extra={
                "sequence_name": sequence_name,
                "previous_value": previous,
                "value": value,
            },
        )

    def all_counters(self) -> list[SequenceCounter]:
        """List every counter, ordered by name."""
        return list(
            self._session.execute(
                select(SequenceCounter).order_by(SequenceCounter.name)
            ).scalars().all()
        )
