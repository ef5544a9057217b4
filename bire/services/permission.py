"""
Role-Based Access Control (RBAC) Service

Uses PERMISSION_MATRIX from the user model to enforce action permissions.
Every workflow operation calls ``check_permission`` with the acting user
before touching any state.

Usage:
    from bire.services.permission import check_permission, PermissionDenied

    # Raises PermissionDenied if not allowed
    check_permission(actor, "assignment.manage")

    # Boolean check
    if has_permission(actor["role"], "review.view"):
        ...
"""

from bire.models.user import PERMISSION_MATRIX


class PermissionDenied(Exception):
    """Raised when a user lacks the required permission, or is not the assigned actor."""

    def __init__(self, user_id: str | None, action: str, reason: str | None = None):
        msg = f"User {user_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.user_id = user_id
        self.action = action
        self.reason = reason


def has_permission(role: str | None, action: str) -> bool:
    """Return True if ``role`` grants ``action``."""
    return action in PERMISSION_MATRIX.get(role, set())


def check_permission(actor: dict | None, action: str) -> None:
    """
    Assert the actor may perform ``action``; raise PermissionDenied if not.

    Args:
        actor: ``{"id", "role"}`` of the caller (None = anonymous)
        action: Action string (e.g. 'review.submit_r1')
    """
    if actor is None:
        raise PermissionDenied(None, action, "not authenticated")
    if not has_permission(actor.get("role"), action):
        raise PermissionDenied(actor.get("id"), action)


def is_admin(actor: dict | None) -> bool:
    return bool(actor) and actor.get("role") == "admin"


def get_role_permissions(role: str) -> set[str]:
    """Return the set of actions granted to a role."""
    return set(PERMISSION_MATRIX.get(role, set()))
