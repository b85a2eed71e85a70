"""
Tests for the pure two-stage approval workflow engine.

Tests cover:
- compute_expected_role: empty history, manager slot filled, terminal, odd histories
- apply_action: the documented transitions, admin overrides
- Validation order: input -> finalized -> conflict of interest -> no action -> wrong stage
- Failed calls leave the aggregate untouched
- INVOICE_ENGINE_TRACE emission
"""

from datetime import datetime, timezone

import pytest

from invoice_engines.workflow import WorkflowEngine, compute_expected_role
from invoice_kernel.domain.clock import DeterministicClock
from invoice_kernel.domain.invoice import (
    APPROVAL_STAGES,
    Actor,
    ApprovalAction,
    ApprovalEvent,
    ApprovalOutcome,
    InvoiceStatus,
    Role,
)
from invoice_kernel.exceptions import (
    ConflictOfInterestError,
    InvalidWorkflowInputError,
    InvoiceAlreadyFinalizedError,
    NoActionExpectedError,
    UnhandledWorkflowStateError,
    WorkflowError,
    WrongStageError,
)


def event(outcome, role, acted_as=None, actor_id="someone"):
    return ApprovalEvent(
        action=outcome,
        actor_id=actor_id,
        actor_role=role,
        acted_as_role=acted_as or role,
        occurred_at=datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc),
    )


def snapshot(invoice):
    return (
        invoice.status,
        tuple(invoice.approval_history),
        invoice.rejection_reason,
        invoice.current_approver_id,
    )


# =========================================================================
# compute_expected_role
# =========================================================================


class TestComputeExpectedRole:

    def test_empty_history_waits_on_manager(self, make_invoice):
        assert compute_expected_role(make_invoice()) == Role.MANAGER

    def test_manager_approval_waits_on_finance(self, make_invoice):
        invoice = make_invoice(
            approval_history=[event(ApprovalOutcome.APPROVED, Role.MANAGER)]
        )
        assert compute_expected_role(invoice) == Role.FINANCE

    def test_admin_in_manager_slot_waits_on_finance(self, make_invoice):
        invoice = make_invoice(
            approval_history=[event(ApprovalOutcome.APPROVED, Role.ADMIN, Role.MANAGER)]
        )
        assert compute_expected_role(invoice) == Role.FINANCE

    @pytest.mark.parametrize("status", [InvoiceStatus.APPROVED, InvoiceStatus.REJECTED])
    def test_terminal_expects_nothing(self, make_invoice, status):
        assert compute_expected_role(make_invoice(status=status)) is None

    def test_pending_with_finance_approval_expects_nothing(self, make_invoice):
        invoice = make_invoice(
            approval_history=[
                event(ApprovalOutcome.APPROVED, Role.MANAGER),
                event(ApprovalOutcome.APPROVED, Role.FINANCE),
            ]
        )
        assert compute_expected_role(invoice) is None

    def test_pending_with_rejection_expects_nothing(self, make_invoice):
        invoice = make_invoice(
            approval_history=[event(ApprovalOutcome.REJECTED, Role.MANAGER)]
        )
        assert compute_expected_role(invoice) is None

    def test_engine_method_delegates(self, make_invoice, workflow_engine):
        assert workflow_engine.compute_expected_role(make_invoice()) == Role.MANAGER


# =========================================================================
# Documented scenarios
# =========================================================================


class TestScenarios:

    def test_manager_approve_moves_to_finance_stage(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()

        result = workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE, None)

        assert result is invoice
        assert invoice.status == InvoiceStatus.PENDING
        assert len(invoice.approval_history) == 1
        first = invoice.approval_history[0]
        assert first.action == ApprovalOutcome.APPROVED
        assert first.actor_role == Role.MANAGER
        assert first.acted_as_role == Role.MANAGER
        assert first.actor_id == manager.id
        assert first.comment is None
        assert compute_expected_role(invoice) == Role.FINANCE

    def test_finance_approve_finalizes(self, make_invoice, workflow_engine, manager, finance):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)

        workflow_engine.apply_action(invoice, finance, ApprovalAction.APPROVE)

        assert invoice.status == InvoiceStatus.APPROVED
        assert len(invoice.approval_history) == 2
        assert invoice.approval_history[1].acted_as_role == Role.FINANCE
        assert invoice.is_terminal

    def test_manager_reject_keeps_comment_verbatim(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()

        workflow_engine.apply_action(invoice, manager, ApprovalAction.REJECT, "bad vendor")

        assert invoice.status == InvoiceStatus.REJECTED
        assert len(invoice.approval_history) == 1
        assert invoice.approval_history[0].action == ApprovalOutcome.REJECTED
        assert invoice.approval_history[0].comment == "bad vendor"
        assert invoice.rejection_reason == "bad vendor"

    def test_submitter_cannot_approve_own_invoice(self, make_invoice, workflow_engine):
        invoice = make_invoice(submitted_by="U1")
        u1 = Actor(id="U1", role=Role.EMPLOYEE)

        with pytest.raises(ConflictOfInterestError) as exc_info:
            workflow_engine.apply_action(invoice, u1, ApprovalAction.APPROVE)

        assert exc_info.value.code == "CONFLICT_OF_INTEREST"
        assert invoice.approval_history == []
        assert invoice.status == InvoiceStatus.PENDING

    def test_employee_at_finance_stage_is_wrong_stage(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)
        outsider = Actor(id="emp-999", role=Role.EMPLOYEE)

        with pytest.raises(WrongStageError) as exc_info:
            workflow_engine.apply_action(invoice, outsider, ApprovalAction.APPROVE)

        assert exc_info.value.expected_role == Role.FINANCE
        assert exc_info.value.actor_role == Role.EMPLOYEE
        assert exc_info.value.code == "WRONG_STAGE"
        assert len(invoice.approval_history) == 1


# =========================================================================
# Stage rules and admin override
# =========================================================================


class TestStageRules:

    def test_finance_cannot_act_at_manager_stage(self, make_invoice, workflow_engine, finance):
        invoice = make_invoice()
        with pytest.raises(WrongStageError) as exc_info:
            workflow_engine.apply_action(invoice, finance, ApprovalAction.APPROVE)
        assert exc_info.value.expected_role == Role.MANAGER

    def test_manager_cannot_act_at_finance_stage(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)
        other_manager = Actor(id="mgr-002", role=Role.MANAGER)
        with pytest.raises(WrongStageError):
            workflow_engine.apply_action(invoice, other_manager, ApprovalAction.APPROVE)

    def test_finance_reject_at_finance_stage(self, make_invoice, workflow_engine, manager, finance):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)

        workflow_engine.apply_action(invoice, finance, ApprovalAction.REJECT, "over budget")

        assert invoice.status == InvoiceStatus.REJECTED
        assert invoice.rejection_reason == "over budget"
        assert len(invoice.approval_history) == 2

    def test_admin_fills_manager_slot(self, make_invoice, workflow_engine, admin):
        invoice = make_invoice()

        workflow_engine.apply_action(invoice, admin, ApprovalAction.APPROVE)

        recorded = invoice.approval_history[0]
        assert recorded.actor_role == Role.ADMIN
        assert recorded.acted_as_role == Role.MANAGER
        assert recorded.is_admin_override
        assert invoice.status == InvoiceStatus.PENDING
        assert compute_expected_role(invoice) == Role.FINANCE

    def test_admin_runs_both_stages(self, make_invoice, workflow_engine, admin):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, admin, ApprovalAction.APPROVE)
        workflow_engine.apply_action(invoice, admin, ApprovalAction.APPROVE)

        assert invoice.status == InvoiceStatus.APPROVED
        assert [e.acted_as_role for e in invoice.approval_history] == [Role.MANAGER, Role.FINANCE]

    def test_admin_submitter_may_decide(self, make_invoice, workflow_engine, admin):
        invoice = make_invoice(submitted_by=admin.id)

        workflow_engine.apply_action(invoice, admin, ApprovalAction.APPROVE)

        assert len(invoice.approval_history) == 1

    def test_string_role_and_action_accepted(self, make_invoice, workflow_engine):
        invoice = make_invoice()
        actor = Actor(id="mgr-009", role="manager")

        workflow_engine.apply_action(invoice, actor, "REJECT", "duplicate")

        assert invoice.status == InvoiceStatus.REJECTED
        assert invoice.approval_history[0].actor_role == Role.MANAGER

    def test_reject_without_comment_is_allowed_by_engine(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.REJECT)
        assert invoice.status == InvoiceStatus.REJECTED
        assert invoice.rejection_reason is None

    def test_event_timestamp_comes_from_clock(self, make_invoice, manager):
        fixed = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
        engine = WorkflowEngine(DeterministicClock(fixed))
        invoice = make_invoice()

        engine.apply_action(invoice, manager, ApprovalAction.APPROVE)

        assert invoice.approval_history[0].occurred_at == fixed

    def test_explicit_occurred_at_wins(self, make_invoice, workflow_engine, manager):
        when = datetime(2026, 2, 2, 8, 0, tzinfo=timezone.utc)
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE, occurred_at=when)
        assert invoice.last_event.occurred_at == when

    def test_clears_current_approver(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice(current_approver_id="mgr-001")
        workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)
        assert invoice.current_approver_id is None


# =========================================================================
# Failure precedence and no partial mutation
# =========================================================================


class TestValidationOrder:

    @pytest.mark.parametrize("status", [InvoiceStatus.APPROVED, InvoiceStatus.REJECTED])
    def test_finalized_beats_conflict_of_interest(self, make_invoice, workflow_engine, status):
        invoice = make_invoice(status=status)
        submitter = Actor(id=invoice.submitted_by, role=Role.MANAGER)

        with pytest.raises(InvoiceAlreadyFinalizedError) as exc_info:
            workflow_engine.apply_action(invoice, submitter, ApprovalAction.APPROVE)

        assert exc_info.value.code == "ALREADY_FINALIZED"

    def test_conflict_beats_wrong_stage(self, make_invoice, workflow_engine):
        invoice = make_invoice(submitted_by="fin-777")
        with pytest.raises(ConflictOfInterestError):
            workflow_engine.apply_action(
                invoice, Actor(id="fin-777", role=Role.FINANCE), ApprovalAction.APPROVE
            )

    def test_no_action_expected_beats_wrong_stage(self, make_invoice, workflow_engine, finance):
        invoice = make_invoice(
            approval_history=[event(ApprovalOutcome.APPROVED, Role.FINANCE)]
        )
        with pytest.raises(NoActionExpectedError) as exc_info:
            workflow_engine.apply_action(invoice, finance, ApprovalAction.APPROVE)
        assert exc_info.value.code == "NO_ACTION_EXPECTED"

    def test_invalid_input_beats_finalized(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice(status=InvoiceStatus.APPROVED)
        with pytest.raises(InvalidWorkflowInputError):
            workflow_engine.apply_action(invoice, manager, "ESCALATE")

    @pytest.mark.parametrize(
        "actor, action, comment",
        [
            (None, ApprovalAction.APPROVE, None),
            (Actor(id="", role=Role.MANAGER), ApprovalAction.APPROVE, None),
            (Actor(id="mgr-1", role=None), ApprovalAction.APPROVE, None),
            (Actor(id="mgr-1", role="cfo"), ApprovalAction.APPROVE, None),
            (Actor(id="mgr-1", role=Role.MANAGER), "MAYBE", None),
            (Actor(id="mgr-1", role=Role.MANAGER), ApprovalAction.APPROVE, "x" * 501),
            (Actor(id="mgr-1", role=Role.MANAGER), ApprovalAction.APPROVE, 42),
        ],
        ids=["no-actor", "empty-id", "no-role", "unknown-role", "bad-action", "long-comment", "non-string-comment"],
    )
    def test_invalid_input(self, make_invoice, workflow_engine, actor, action, comment):
        invoice = make_invoice()
        before = snapshot(invoice)

        with pytest.raises(InvalidWorkflowInputError) as exc_info:
            workflow_engine.apply_action(invoice, actor, action, comment)

        assert exc_info.value.code == "INVALID_INPUT"
        assert snapshot(invoice) == before

    def test_missing_invoice(self, workflow_engine, manager):
        with pytest.raises(InvalidWorkflowInputError):
            workflow_engine.apply_action(None, manager, ApprovalAction.APPROVE)

    def test_comment_at_limit_accepted(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.REJECT, "x" * 500)
        assert len(invoice.rejection_reason) == 500

    def test_second_terminal_action_changes_nothing(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice()
        workflow_engine.apply_action(invoice, manager, ApprovalAction.REJECT, "no PO")
        before = snapshot(invoice)

        with pytest.raises(InvoiceAlreadyFinalizedError):
            workflow_engine.apply_action(invoice, manager, ApprovalAction.REJECT, "no PO")

        assert snapshot(invoice) == before
        assert len(invoice.approval_history) == 1

    def test_all_failures_are_workflow_errors(self, make_invoice, workflow_engine, manager):
        invoice = make_invoice(status=InvoiceStatus.APPROVED)
        with pytest.raises(WorkflowError):
            workflow_engine.apply_action(invoice, manager, ApprovalAction.APPROVE)


# =========================================================================
# Trace logging
# =========================================================================


class TestEngineTrace:

    def test_success_trace(self, make_invoice, workflow_engine, manager, captured_logs):
        workflow_engine.apply_action(make_invoice(), manager, ApprovalAction.APPROVE)

        traces = [r for r in captured_logs() if r["message"] == "INVOICE_ENGINE_TRACE"]
        assert len(traces) == 1
        assert traces[0]["engine_name"] == "workflow"
        assert traces[0]["outcome"] == "ok"
        assert len(traces[0]["input_fingerprint"]) == 16

    def test_failure_trace_carries_code(self, make_invoice, workflow_engine, finance, captured_logs):
        with pytest.raises(WrongStageError):
            workflow_engine.apply_action(make_invoice(), finance, ApprovalAction.APPROVE)

        traces = [r for r in captured_logs() if r["message"] == "INVOICE_ENGINE_TRACE"]
        assert traces[-1]["outcome"] == "WRONG_STAGE"

    def test_fingerprint_is_deterministic(self, make_invoice, manager, captured_logs):
        engine = WorkflowEngine(DeterministicClock())
        engine.apply_action(make_invoice(invoice_number="INV-X"), manager, ApprovalAction.APPROVE)
        engine.apply_action(make_invoice(invoice_number="INV-X"), manager, ApprovalAction.APPROVE)

        prints = [
            r["input_fingerprint"]
            for r in captured_logs()
            if r["message"] == "INVOICE_ENGINE_TRACE"
        ]
        assert len(prints) == 2
        assert prints[0] == prints[1]

    def test_transition_logged(self, make_invoice, workflow_engine, manager, captured_logs):
        workflow_engine.apply_action(make_invoice(), manager, ApprovalAction.REJECT, "dup")
        applied = [r for r in captured_logs() if r["message"] == "workflow_transition_applied"]
        assert applied[0]["status"] == "REJECTED"
        assert applied[0]["acted_as_role"] == "manager"


# =========================================================================
# Stage graph coverage
# =========================================================================

PRECONDITION_ERRORS = (
    InvoiceAlreadyFinalizedError,
    ConflictOfInterestError,
    NoActionExpectedError,
    WrongStageError,
)

HISTORY_SHAPES = {
    "empty": [],
    "manager_approved": [event(ApprovalOutcome.APPROVED, Role.MANAGER)],
}


class TestStageGraph:

    def test_stages_drive_expected_role(self, make_invoice):
        invoice = make_invoice()
        seen = []
        expected = compute_expected_role(invoice)
        while expected is not None:
            seen.append(expected)
            invoice.approval_history.append(event(ApprovalOutcome.APPROVED, expected))
            expected = compute_expected_role(invoice)
        assert tuple(seen) == APPROVAL_STAGES

    @pytest.mark.parametrize("shape", sorted(HISTORY_SHAPES))
    @pytest.mark.parametrize("action", list(ApprovalAction))
    @pytest.mark.parametrize("role", list(Role))
    def test_every_valid_role_has_a_rule(self, make_invoice, workflow_engine, role, action, shape):
        invoice = make_invoice(approval_history=list(HISTORY_SHAPES[shape]))
        actor = Actor(id=f"{role.value}-actor", role=role)

        try:
            workflow_engine.apply_action(invoice, actor, action, "reviewed")
        except UnhandledWorkflowStateError as exc:
            pytest.fail(f"{role.value} {action.value} on {shape} history reached no rule: {exc}")
        except PRECONDITION_ERRORS:
            return

        assert invoice.last_event.actor_role == role
        assert invoice.last_event.acted_as_role in APPROVAL_STAGES
