"""
invoice_engines.workflow -- Two-stage invoice approval state machine.

Responsibility:
    Decide which role an invoice is waiting on, validate an approve/reject
    request against that, and apply the transition to the in-memory
    aggregate.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import invoice_kernel/domain/ types, exceptions and logging.

Invariants enforced:
    - Fixed graph: manager stage, then finance stage.  A reject at either
      stage ends the workflow.  Admin may occupy either slot.
    - Terminal invoices accept nothing.
    - The submitter never decides on their own invoice unless their real
      role is admin.
    - History is append-only; a failed call leaves the aggregate untouched.

Failure modes:
    - InvalidWorkflowInputError, InvoiceAlreadyFinalizedError,
      ConflictOfInterestError, NoActionExpectedError, WrongStageError,
      checked in that order.
    - UnhandledWorkflowStateError if an effective role reaches a transition
      with no rule.  Unreachable; logged at CRITICAL.

State table:

    Current                              | Action  | Eligible        | Result
    -------------------------------------|---------|-----------------|-------------------
    PENDING, empty history               | APPROVE | manager, admin  | PENDING, 1 event
    PENDING, empty history               | REJECT  | manager, admin  | REJECTED
    PENDING, last APPROVED as manager    | APPROVE | finance, admin  | APPROVED
    PENDING, last APPROVED as manager    | REJECT  | finance, admin  | REJECTED
    APPROVED / REJECTED                  | any     | none            | ALREADY_FINALIZED
    PENDING, any other history           | any     | none            | NO_ACTION_EXPECTED
"""

from __future__ import annotations

from datetime import datetime

from invoice_engines.tracer import traced_engine
from invoice_kernel.domain.clock import Clock, SystemClock
from invoice_kernel.domain.invoice import (
    ACTION_OUTCOMES,
    APPROVAL_STAGES,
    MAX_COMMENT_LENGTH,
    Actor,
    ApprovalAction,
    ApprovalEvent,
    ApprovalOutcome,
    Invoice,
    InvoiceStatus,
    Role,
)
from invoice_kernel.exceptions import (
    ConflictOfInterestError,
    InvalidWorkflowInputError,
    InvoiceAlreadyFinalizedError,
    NoActionExpectedError,
    UnhandledWorkflowStateError,
    WrongStageError,
)
from invoice_kernel.logging_config import get_logger

logger = get_logger("engines.workflow")

ENGINE_NAME = "workflow"
ENGINE_VERSION = "1.0"


def compute_expected_role(invoice: Invoice) -> Role | None:
    """Role the invoice is waiting on, or None if no action is expected.

    Reads only ``acted_as_role`` on the last event, so an admin who acted
    in the manager slot advances the invoice exactly like a manager.
    """
    if invoice.status != InvoiceStatus.PENDING:
        return None
    if not invoice.approval_history:
        return APPROVAL_STAGES[0]
    last = invoice.approval_history[-1]
    if last.action != ApprovalOutcome.APPROVED or last.acted_as_role not in APPROVAL_STAGES:
        return None
    next_index = APPROVAL_STAGES.index(last.acted_as_role) + 1
    if next_index < len(APPROVAL_STAGES):
        return APPROVAL_STAGES[next_index]
    return None


def _coerce_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise InvalidWorkflowInputError(f"unknown role {role!r}") from None


def _coerce_action(action) -> ApprovalAction:
    try:
        return ApprovalAction(action)
    except ValueError:
        raise InvalidWorkflowInputError(
            f"action must be APPROVE or REJECT, got {action!r}"
        ) from None


class WorkflowEngine:
    """
    Approve/reject transitions over the ``Invoice`` aggregate.

    Contract:
        ``apply_action`` either mutates the passed invoice and returns it, or
        raises a typed WorkflowError and leaves the invoice as it was.

    Non-goals:
        - No persistence, audit or notification.  The lifecycle service
          does those after a successful transition.
        - Does NOT enforce the rejection comment; that is a lifecycle
          setting.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def compute_expected_role(self, invoice: Invoice) -> Role | None:
        return compute_expected_role(invoice)

    @traced_engine(ENGINE_NAME, ENGINE_VERSION, fingerprint_fields=("invoice", "actor", "action"))
    def apply_action(
        self,
        invoice: Invoice,
        actor: Actor,
        action: ApprovalAction | str,
        comment: str | None = None,
        *,
        occurred_at: datetime | None = None,
    ) -> Invoice:
        """
        Validate and apply one decision.

        Args:
            invoice: The aggregate to transition.
            actor: Who is deciding.  ``actor.role`` may be a Role or its value.
            action: APPROVE or REJECT (enum or its value).
            comment: Optional, at most MAX_COMMENT_LENGTH characters.
            occurred_at: Event timestamp.  Defaults to the injected clock.

        Returns:
            The same ``invoice`` object, transitioned.
        """
        if invoice is None:
            raise InvalidWorkflowInputError("invoice is required")
        if actor is None:
            raise InvalidWorkflowInputError("actor is required")
        actor_id = getattr(actor, "id", None)
        raw_role = getattr(actor, "role", None)
        if not actor_id:
            raise InvalidWorkflowInputError("actor id is required")
        if raw_role is None:
            raise InvalidWorkflowInputError("actor role is required")
        role = _coerce_role(raw_role)
        action = _coerce_action(action)
        if comment is not None:
            if not isinstance(comment, str):
                raise InvalidWorkflowInputError("comment must be a string")
            if len(comment) > MAX_COMMENT_LENGTH:
                raise InvalidWorkflowInputError(
                    f"comment exceeds {MAX_COMMENT_LENGTH} characters"
                )

        if invoice.is_terminal:
            raise InvoiceAlreadyFinalizedError(invoice.invoice_number, invoice.status.value)

        if actor_id == invoice.submitted_by and role != Role.ADMIN:
            raise ConflictOfInterestError(invoice.invoice_number, actor_id)

        expected_role = compute_expected_role(invoice)
        if expected_role is None:
            raise NoActionExpectedError(invoice.invoice_number)

        if role != expected_role and role != Role.ADMIN:
            raise WrongStageError(invoice.invoice_number, expected_role, role)

        effective_role = expected_role if role == Role.ADMIN else role

        if action == ApprovalAction.REJECT:
            new_status = InvoiceStatus.REJECTED
        elif effective_role == APPROVAL_STAGES[-1]:
            new_status = InvoiceStatus.APPROVED
        elif effective_role in APPROVAL_STAGES:
            new_status = InvoiceStatus.PENDING
        else:
            logger.critical(
                "workflow_unhandled_state",
                extra={
                    "invoice_number": invoice.invoice_number,
                    "effective_role": effective_role.value,
                    "action": action.value,
                },
            )
            raise UnhandledWorkflowStateError(invoice.invoice_number, effective_role)

        event = ApprovalEvent(
            action=ACTION_OUTCOMES[action],
            actor_id=actor_id,
            actor_role=role,
            acted_as_role=effective_role,
            occurred_at=occurred_at or self._clock.now(),
            comment=comment,
        )

        invoice.approval_history.append(event)
        invoice.status = new_status
        invoice.current_approver_id = None
        if new_status == InvoiceStatus.REJECTED:
            invoice.rejection_reason = comment

        logger.info(
            "workflow_transition_applied",
            extra={
                "invoice_number": invoice.invoice_number,
                "action": action.value,
                "actor_role": role.value,
                "acted_as_role": effective_role.value,
                "status": new_status.value,
            },
        )
        return invoice
