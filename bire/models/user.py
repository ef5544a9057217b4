"""
User domain model and role-based access policy.

Models:
    - User: staff members and applicants.  ``role`` drives every workflow
      authorization decision through PERMISSION_MATRIX.

PERMISSION_MATRIX is the single (role, action) policy table consumed by
``bire.services.permission``.  Blueprints and services never compare role
strings ad hoc.
"""

import uuid
from datetime import datetime, timezone

from bire.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Roles ────────────────────────────────────────────────────────────────────

ROLE_APPLICANT = "applicant"
ROLE_REVIEWER_1 = "reviewer_1"
ROLE_REVIEWER_2 = "reviewer_2"
ROLE_TECHNICAL_REVIEWER = "technical_reviewer"
ROLE_OVERSIGHT = "oversight"
ROLE_ADMIN = "admin"

VALID_ROLES = frozenset({
    ROLE_APPLICANT,
    ROLE_REVIEWER_1,
    ROLE_REVIEWER_2,
    ROLE_TECHNICAL_REVIEWER,
    ROLE_OVERSIGHT,
    ROLE_ADMIN,
})

REVIEWER_ROLES = (ROLE_REVIEWER_1, ROLE_REVIEWER_2)
STAFF_ROLES = frozenset(VALID_ROLES - {ROLE_APPLICANT})
VALIDATOR_ROLES = frozenset({ROLE_ADMIN, ROLE_OVERSIGHT})


# ── Permission matrix: role → set of allowed actions ─────────────────────────

_DD_WORK = {"dd.view", "dd.score", "dd.select_validator", "dd.final_decision"}

PERMISSION_MATRIX = {
    ROLE_APPLICANT: {
        "application.create", "application.submit",
    },
    ROLE_REVIEWER_1: {
        "application.view", "assignment.view_own",
        "review.submit_r1", "review.view",
    },
    ROLE_REVIEWER_2: {
        "application.view", "assignment.view_own",
        "review.submit_r2", "review.view",
    },
    ROLE_TECHNICAL_REVIEWER: {
        "application.view", "review.view",
        *_DD_WORK,
    },
    ROLE_OVERSIGHT: {
        "application.view", "review.view",
        *_DD_WORK,
        "dd.validate", "dd.recommend",
        "reporting.view",
    },
    ROLE_ADMIN: {
        "application.create", "application.submit", "application.view",
        "application.transition", "application.force_transition",
        "assignment.manage", "assignment.stats",
        "review.submit_r1", "review.submit_r2", "review.view",
        "review.override", "review.lock", "review.comment", "review.reconcile",
        *_DD_WORK,
        "dd.validate", "dd.recommend", "dd.check_deadlines",
        "reporting.view",
        "diagnostics.view",
        "jobs.manage",
    },
}


class User(db.Model):
    """A person known to the portal, applicant or staff."""

    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint(
            "role IN ('applicant','reviewer_1','reviewer_2',"
            "'technical_reviewer','oversight','admin')",
            name="ck_users_role",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False, default="")
    last_name = db.Column(db.String(100), nullable=False, default="")
    role = db.Column(
        db.String(30), nullable=False, default=ROLE_APPLICANT,
        comment="applicant | reviewer_1 | reviewer_2 | technical_reviewer | oversight | admin",
    )
    is_active = db.Column(
        db.Boolean, nullable=False, default=True,
        comment="Deactivated users keep their history but cannot be chosen as validators",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.email} [{self.role}]>"
