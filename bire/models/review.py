"""
Review domain models: two-tier scoring and reviewer assignment.

Models:
    - EligibilityResult: the single current scoring record of an application.
      Holds the R1/R2 assignment slots, both blind scores, the aggregate and
      the administrative lock.
    - ReviewerQueueEntry: membership of a reviewer in the R1 or R2 pool.

Assignment load is never stored.  ``assignment_count`` and open workload are
counted from ``eligibility_results`` whenever they are needed, so the pool
cannot drift away from the actual assignment rows.
"""

from datetime import datetime, timezone

from bire.models import db


def _utcnow():
    return datetime.now(timezone.utc)


REVIEW_DECISIONS = frozenset({"approved", "rejected"})

# Reviewer slot → (assigned column, scorer column, score column) attribute names
SLOT_COLUMNS = {
    "reviewer_1": ("assigned_reviewer1_id", "reviewer1_id", "reviewer1_score"),
    "reviewer_2": ("assigned_reviewer2_id", "reviewer2_id", "reviewer2_score"),
}


class EligibilityResult(db.Model):
    """Scoring record for one application (unscored → R1 scored → final)."""

    __tablename__ = "eligibility_results"

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )

    # ── Assignment slots ──────────────────────────────────────────────────
    assigned_reviewer1_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    assigned_reviewer1_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assigned_reviewer2_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    assigned_reviewer2_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── First-tier review ─────────────────────────────────────────────────
    reviewer1_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="User who actually submitted the R1 score",
    )
    reviewer1_score = db.Column(db.Float, nullable=True)
    reviewer1_notes = db.Column(db.Text, nullable=True)
    reviewer1_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Second-tier review ────────────────────────────────────────────────
    reviewer2_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reviewer2_score = db.Column(db.Float, nullable=True)
    reviewer2_notes = db.Column(db.Text, nullable=True)
    reviewer2_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Aggregate ─────────────────────────────────────────────────────────
    total_score = db.Column(
        db.Float, nullable=True,
        comment="Average of R1 and R2 scores",
    )
    is_eligible = db.Column(db.Boolean, nullable=True)
    overrode_reviewer1 = db.Column(db.Boolean, nullable=False, default=False)
    override_decision = db.Column(
        db.String(20), nullable=True,
        comment="approved | rejected; takes precedence over the threshold",
    )
    override_reason = db.Column(db.Text, nullable=True)
    admin_oversight_comment = db.Column(db.Text, nullable=True)

    # ── Lock ──────────────────────────────────────────────────────────────
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    locked_by = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    lock_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    application = db.relationship(
        "Application", backref=db.backref("eligibility_result", uselist=False),
    )

    @property
    def is_final(self) -> bool:
        return self.reviewer1_score is not None and self.reviewer2_score is not None

    def to_dict(self):
        return {
            "id": self.id,
            "application_id": self.application_id,
            "assigned_reviewer1_id": self.assigned_reviewer1_id,
            "assigned_reviewer1_at": (
                self.assigned_reviewer1_at.isoformat() if self.assigned_reviewer1_at else None
            ),
            "assigned_reviewer2_id": self.assigned_reviewer2_id,
            "assigned_reviewer2_at": (
                self.assigned_reviewer2_at.isoformat() if self.assigned_reviewer2_at else None
            ),
            "reviewer1_id": self.reviewer1_id,
            "reviewer1_score": self.reviewer1_score,
            "reviewer1_notes": self.reviewer1_notes,
            "reviewer1_at": self.reviewer1_at.isoformat() if self.reviewer1_at else None,
            "reviewer2_id": self.reviewer2_id,
            "reviewer2_score": self.reviewer2_score,
            "reviewer2_notes": self.reviewer2_notes,
            "reviewer2_at": self.reviewer2_at.isoformat() if self.reviewer2_at else None,
            "total_score": self.total_score,
            "is_eligible": self.is_eligible,
            "overrode_reviewer1": self.overrode_reviewer1,
            "override_decision": self.override_decision,
            "override_reason": self.override_reason,
            "admin_oversight_comment": self.admin_oversight_comment,
            "is_locked": self.is_locked,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "lock_reason": self.lock_reason,
        }

    def __repr__(self):
        return f"<EligibilityResult app={self.application_id} total={self.total_score}>"


class ReviewerQueueEntry(db.Model):
    """A reviewer's place in the R1 or R2 assignment pool."""

    __tablename__ = "reviewer_assignment_queue"
    __table_args__ = (
        db.UniqueConstraint("reviewer_id", "reviewer_role", name="uq_queue_reviewer_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reviewer_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    reviewer_role = db.Column(
        db.String(20), nullable=False,
        comment="reviewer_1 | reviewer_2",
    )
    is_active = db.Column(
        db.Boolean, nullable=False, default=True,
        comment="Inactive reviewers keep existing work but get no new assignments",
    )
    last_assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    reviewer = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "reviewer_id": self.reviewer_id,
            "reviewer_role": self.reviewer_role,
            "is_active": self.is_active,
            "last_assigned_at": self.last_assigned_at.isoformat() if self.last_assigned_at else None,
        }

    def __repr__(self):
        return f"<ReviewerQueueEntry {self.reviewer_id} [{self.reviewer_role}]>"
