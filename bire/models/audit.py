"""
BIRE Review Workflow
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of workflow decisions
      (forced transitions, overrides, locks, validator actions,
      deadline reassignments).
"""

import json
from datetime import UTC, datetime

from bire.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "application", "eligibility_result", "due_diligence", "reviewer_queue",
}

AUDIT_ACTIONS = {
    # Application lifecycle
    "application.transition",
    "application.force_transition",
    # Scoring
    "review.override",
    "review.lock",
    "review.unlock",
    "review.reconcile",
    # Due diligence
    "dd.oversight_recommend",
    "dd.validator_selected",
    "dd.validator_action",
    "dd.auto_reassign",
    "dd.final_decision",
    # Assignment
    "assignment.redistribute",
    "assignment.toggle_active",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every workflow decision.

    One row per action.  ``diff_json`` carries the old→new snapshot
    plus any free-text notes supplied by the actor.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="application | eligibility_result | due_diligence | reviewer_queue",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="application.force_transition | dd.auto_reassign | …",
    )
    actor_user_id = db.Column(
        db.String(36), nullable=True,
        comment="User id of the actor; NULL for the scheduler",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
