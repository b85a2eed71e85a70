"""
invoice_services.rbac_authority -- Role and permission checks at the service boundary.

Responsibility:
    Decide whether an actor's role grants a permission (submit, view,
    decide, audit, sequence administration), and provide the
    "any of these roles" guard used by outer layers.

Architecture position:
    Services layer.  Called by InvoiceLifecycleService before running the
    workflow engine, and by the admin CLI.

Invariants:
    - Roles are the closed ``Role`` enum; unknown roles hold no permissions.
    - RBAC answers "may this role do this kind of thing at all".  Stage
      order and conflict of interest are the workflow engine's job.
"""

from __future__ import annotations

from invoice_kernel.domain.invoice import Actor, Role
from invoice_kernel.exceptions import PermissionDeniedError
from invoice_kernel.logging_config import get_logger

logger = get_logger("services.rbac")

INVOICE_SUBMIT = "invoice.submit"
INVOICE_VIEW_OWN = "invoice.view_own"
INVOICE_VIEW_ALL = "invoice.view_all"
INVOICE_DECIDE = "invoice.decide"
AUDIT_VIEW = "audit.view"
SEQUENCE_ADMIN = "sequence.admin"

PERMISSION_TAXONOMY: frozenset[str] = frozenset({
    INVOICE_SUBMIT,
    INVOICE_VIEW_OWN,
    INVOICE_VIEW_ALL,
    INVOICE_DECIDE,
    AUDIT_VIEW,
    SEQUENCE_ADMIN,
})

_APPROVER_PERMISSIONS = frozenset({
    INVOICE_SUBMIT,
    INVOICE_VIEW_OWN,
    INVOICE_VIEW_ALL,
    INVOICE_DECIDE,
})

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.EMPLOYEE: frozenset({INVOICE_SUBMIT, INVOICE_VIEW_OWN}),
    Role.MANAGER: _APPROVER_PERMISSIONS,
    Role.FINANCE: _APPROVER_PERMISSIONS,
    Role.ADMIN: PERMISSION_TAXONOMY,
}


def _as_role(role) -> Role | None:
    try:
        return Role(role)
    except ValueError:
        return None


def check_permission(role: Role | str | None, required_permission: str) -> tuple[bool, str]:
    """Check whether ``role`` grants ``required_permission``.

    Returns:
        (allowed, reason). reason is empty when allowed, or a short message
        when denied.
    """
    if required_permission not in PERMISSION_TAXONOMY:
        return (False, f"RBAC: unknown permission '{required_permission}'")
    if role is None:
        return (False, "RBAC: no role provided")

    resolved = _as_role(role)
    if resolved is None:
        return (False, f"RBAC: unknown role {role!r}")

    if required_permission not in ROLE_PERMISSIONS[resolved]:
        return (False, f"RBAC: permission '{required_permission}' not granted to role '{resolved.value}'")

    return (True, "")


def require_permission(actor: Actor, required_permission: str) -> None:
    """Raise PermissionDeniedError unless the actor's role grants the permission."""
    role = getattr(actor, "role", None)
    allowed, reason = check_permission(role, required_permission)
    if not allowed:
        logger.warning(
            "permission_denied",
            extra={
                "actor_id": getattr(actor, "id", None),
                "role": getattr(role, "value", role),
                "permission": required_permission,
                "reason": reason,
            },
        )
        raise PermissionDeniedError(
            getattr(actor, "id", None),
            getattr(role, "value", role),
            required_permission,
        )


def require_any_role(actor: Actor, *allowed_roles: Role | str) -> Role:
    """Guard that the actor holds one of ``allowed_roles``.

    Raises:
        ValueError: if no roles are given (a programming error).
        PermissionDeniedError: if the actor's role is not among them.
    """
    if not allowed_roles:
        raise ValueError("require_any_role requires at least one allowed role")

    allowed = {Role(r) for r in allowed_roles}
    role = _as_role(getattr(actor, "role", None)) if actor is not None else None
    if role is None or role not in allowed:
        raw = getattr(actor, "role", None)
        raise PermissionDeniedError(
            getattr(actor, "id", None),
            getattr(raw, "value", raw),
            "role:" + "|".join(sorted(r.value for r in allowed)),
        )
    return role
