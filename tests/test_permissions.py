"""
RBAC tests: PERMISSION_MATRIX lookups and check_permission behaviour.
"""

import pytest

from bire.models.user import PERMISSION_MATRIX, VALID_ROLES
from bire.services.permission import (
    PermissionDenied,
    check_permission,
    get_role_permissions,
    has_permission,
    is_admin,
)


class TestMatrix:
    def test_every_role_has_an_entry(self):
        assert set(PERMISSION_MATRIX) == set(VALID_ROLES)

    @pytest.mark.parametrize("role,action", [
        ("reviewer_1", "review.submit_r1"),
        ("reviewer_2", "review.submit_r2"),
        ("technical_reviewer", "dd.score"),
        ("oversight", "dd.validate"),
        ("oversight", "dd.recommend"),
        ("admin", "application.force_transition"),
        ("admin", "jobs.manage"),
        ("applicant", "application.submit"),
    ])
    def test_granted(self, role, action):
        assert has_permission(role, action)

    @pytest.mark.parametrize("role,action", [
        ("reviewer_1", "review.submit_r2"),
        ("reviewer_2", "review.submit_r1"),
        ("technical_reviewer", "dd.validate"),
        ("oversight", "review.override"),
        ("oversight", "diagnostics.view"),
        ("applicant", "review.view"),
        (None, "application.view"),
        ("superuser", "application.view"),
    ])
    def test_denied(self, role, action):
        assert not has_permission(role, action)

    def test_role_permissions_are_a_copy(self):
        perms = get_role_permissions("reviewer_1")
        perms.add("jobs.manage")
        assert not has_permission("reviewer_1", "jobs.manage")


class TestCheckPermission:
    def test_anonymous_has_no_user_id(self):
        with pytest.raises(PermissionDenied) as exc:
            check_permission(None, "review.view")
        assert exc.value.user_id is None

    def test_denied_carries_actor_and_action(self):
        with pytest.raises(PermissionDenied) as exc:
            check_permission({"id": "r1-a", "role": "reviewer_1"}, "assignment.manage")
        assert exc.value.user_id == "r1-a"
        assert exc.value.action == "assignment.manage"

    def test_allowed_returns_none(self):
        assert check_permission({"id": "a", "role": "admin"}, "assignment.manage") is None

    def test_is_admin(self):
        assert is_admin({"id": "a", "role": "admin"})
        assert not is_admin({"id": "o", "role": "oversight"})
        assert not is_admin(None)
