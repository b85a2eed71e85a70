"""
Typed Exception Hierarchy for the Invoice Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval decisions must fail precisely. A caller (an HTTP controller, a CLI,
a test) needs to tell "this invoice is closed" apart from "you cannot approve
your own invoice" without parsing message strings.

Every exception therefore has:
  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example - WRONG way to handle errors:
    try:
        engine.apply_action(invoice, actor, "APPROVE")
    except Exception as e:
        if "finalized" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        engine.apply_action(invoice, actor, "APPROVE")
    except WrongStageError as e:
        api_response(code=e.code, expected_role=e.expected_role.value)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from InvoiceKernelError:

    InvoiceKernelError (base)
    |
    +-- WorkflowError
    |   +-- InvalidWorkflowInputError
    |   +-- InvoiceAlreadyFinalizedError
    |   +-- ConflictOfInterestError
    |   +-- NoActionExpectedError
    |   +-- WrongStageError
    |   +-- UnhandledWorkflowStateError
    |   +-- RejectionCommentRequiredError
    |
    +-- SequenceError
    |   +-- SequenceStoreUnavailableError
    |   +-- InvalidSequenceFormatError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- InvoiceValidationError
    |   +-- DuplicateInvoiceNumberError
    |   +-- InvoiceNumberAllocationExhaustedError
    |
    +-- AuthorizationError
    |   +-- PermissionDeniedError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                                | When Raised
-------------|-------------------------------------|-----------------------------------
Workflow     | INVALID_INPUT                       | Malformed engine call (caller bug)
             | ALREADY_FINALIZED                   | Invoice is APPROVED or REJECTED
             | CONFLICT_OF_INTEREST                | Submitter acting on own invoice
             | NO_ACTION_EXPECTED                  | History shape admits no action
             | WRONG_STAGE                         | Actor role does not match stage
             | UNHANDLED_STATE                     | Engine defect (never expected)
             | REJECTION_COMMENT_REQUIRED          | Reject without a reason
-------------|-------------------------------------|-----------------------------------
Sequence     | SEQUENCE_STORE_UNAVAILABLE          | Counter store unreachable
             | INVALID_SEQUENCE_FORMAT             | Bad padding / prefix / period key
-------------|-------------------------------------|-----------------------------------
Invoice      | INVOICE_NOT_FOUND                   | Unknown invoice number
             | INVOICE_VALIDATION_FAILED           | Submission fields invalid
             | DUPLICATE_INVOICE_NUMBER            | Unique constraint on number hit
             | INVOICE_NUMBER_ALLOCATION_EXHAUSTED | Create retries used up
-------------|-------------------------------------|-----------------------------------
Authority    | PERMISSION_DENIED                   | Role lacks the permission
-------------|-------------------------------------|-----------------------------------
Audit        | AUDIT_CHAIN_BROKEN                  | Hash chain validation failed
-------------|-------------------------------------|-----------------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT            | Stale aggregate saved
-------------|-------------------------------------|-----------------------------------
Immutability | IMMUTABILITY_VIOLATION              | Write to terminal / append-only row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. WORKFLOW ERRORS ARE NEVER RETRIED:

    except InvoiceAlreadyFinalizedError:
        respond(409, "this invoice is closed")
    except ConflictOfInterestError:
        respond(403, "you cannot act on your own invoice")

2. DUPLICATE NUMBERS ARE RETRIED (bounded) BY THE LIFECYCLE SERVICE ONLY:

    except InvoiceNumberAllocationExhaustedError:
        respond(503, "try again")

3. STALE SAVES ARE RELOADED, NEVER RE-SAVED:

    except OptimisticLockError:
        invoice = reload(...)
        engine.apply_action(invoice, actor, action)  # re-validates

===============================================================================
"""


class InvoiceKernelError(Exception):
    """
    Base exception for all invoice kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "INVOICE_KERNEL_ERROR"


# Workflow-related exceptions


class WorkflowError(InvoiceKernelError):
    """Base exception for approval workflow errors."""

    code: str = "WORKFLOW_ERROR"


class InvalidWorkflowInputError(WorkflowError):
    """Malformed call into the workflow engine. Always a caller bug."""

    code: str = "INVALID_INPUT"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid workflow input: {reason}")


class InvoiceAlreadyFinalizedError(WorkflowError):
    """Invoice is in a terminal state and accepts no further action."""

    code: str = "ALREADY_FINALIZED"

    def __init__(self, invoice_number: str, status: str):
        self.invoice_number = invoice_number
        self.status = status
        super().__init__(
            f"Invoice {invoice_number} is already finalized as {status}"
        )


class ConflictOfInterestError(WorkflowError):
    """
    Segregation-of-duties violation.

    The submitter of an invoice cannot approve or reject it unless acting
    as admin.
    """

    code: str = "CONFLICT_OF_INTEREST"

    def __init__(self, invoice_number: str, actor_id: str):
        self.invoice_number = invoice_number
        self.actor_id = actor_id
        super().__init__(
            f"Conflict of interest: {actor_id} cannot act on own invoice {invoice_number}"
        )


class NoActionExpectedError(WorkflowError):
    """The invoice's history shape admits no further action."""

    code: str = "NO_ACTION_EXPECTED"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(
            f"No further approvals allowed for invoice {invoice_number} in its current state"
        )


class WrongStageError(WorkflowError):
    """Actor's role does not match the stage the invoice is waiting on."""

    code: str = "WRONG_STAGE"

    def __init__(self, invoice_number: str, expected_role, actor_role):
        self.invoice_number = invoice_number
        self.expected_role = expected_role
        self.actor_role = actor_role
        super().__init__(
            f"Action not allowed on {invoice_number}: stage requires role "
            f"{str(getattr(expected_role, 'value', expected_role)).upper()}, "
            f"actor has {getattr(actor_role, 'value', actor_role)}"
        )


class UnhandledWorkflowStateError(WorkflowError):
    """
    Engine defect: an effective role reached a transition with no rule.

    Unreachable given stage validation. Seeing this means a test gap.
    """

    code: str = "UNHANDLED_STATE"

    def __init__(self, invoice_number: str, effective_role):
        self.invoice_number = invoice_number
        self.effective_role = effective_role
        super().__init__(
            f"Unhandled workflow state for {invoice_number}: effective role {effective_role}"
        )


class RejectionCommentRequiredError(WorkflowError):
    """A rejection was submitted without a reason."""

    code: str = "REJECTION_COMMENT_REQUIRED"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"A comment is required to reject invoice {invoice_number}")


# Sequence-related exceptions


class SequenceError(InvoiceKernelError):
    """Base exception for sequence allocation errors."""

    code: str = "SEQUENCE_ERROR"


class SequenceStoreUnavailableError(SequenceError):
    """
    Counter store could not be reached.

    Internal to the allocator: converted to degraded-mode allocation,
    never surfaced to callers of ``next_id``.
    """

    code: str = "SEQUENCE_STORE_UNAVAILABLE"

    def __init__(self, sequence_name: str, reason: str):
        self.sequence_name = sequence_name
        self.reason = reason
        super().__init__(f"Sequence store unavailable for {sequence_name}: {reason}")


class InvalidSequenceFormatError(SequenceError):
    """Caller misuse of the allocator (padding, prefix or period key)."""

    code: str = "INVALID_SEQUENCE_FORMAT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Invoice-related exceptions


class InvoiceError(InvoiceKernelError):
    """Base exception for invoice lifecycle errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice with given number was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice not found: {invoice_number}")


class InvoiceValidationError(InvoiceError):
    """Submitted invoice fields failed validation."""

    code: str = "INVOICE_VALIDATION_FAILED"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid invoice field '{field}': {reason}")


class DuplicateInvoiceNumberError(InvoiceError):
    """Persistence reported a uniqueness conflict on the invoice number."""

    code: str = "DUPLICATE_INVOICE_NUMBER"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice number already in use: {invoice_number}")


class InvoiceNumberAllocationExhaustedError(InvoiceError):
    """Every create attempt hit a duplicate invoice number."""

    code: str = "INVOICE_NUMBER_ALLOCATION_EXHAUSTED"

    def __init__(self, attempts: int, last_invoice_number: str | None):
        self.attempts = attempts
        self.last_invoice_number = last_invoice_number
        super().__init__(
            f"Failed to allocate a unique invoice number after {attempts} attempts "
            f"(last tried {last_invoice_number})"
        )


# Authorization-related exceptions


class AuthorizationError(InvoiceKernelError):
    """Base exception for role/permission errors."""

    code: str = "AUTHORIZATION_ERROR"


class PermissionDeniedError(AuthorizationError):
    """Actor's role does not grant the required permission."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, actor_id: str | None, role: str | None, permission: str):
        self.actor_id = actor_id
        self.role = role
        self.permission = permission
        super().__init__(
            f"Access denied: role {role!r} lacks permission '{permission}'"
        )


# Audit-related exceptions


class AuditError(InvoiceKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Concurrency-related exceptions


class ConcurrencyError(InvoiceKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(InvoiceKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Finalized invoices, approval events and audit events are immutable.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
