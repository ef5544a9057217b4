"""
Due-diligence (DD) domain models and scoring rubrics.

Models:
    - DueDiligenceRecord: one DD assessment per qualifying application
    - DueDiligenceItem: a single rubric criterion score within a phase

Phase 1 is the desk/phone review, Phase 2 the physical site visit.  Each
rubric has 20 criteria scored on the 0/1/3/5 scale, so a phase totals 100.

DD_TRANSITIONS is the DD status machine:

    pending           → in_progress
    in_progress       → awaiting_approval
    queried           → in_progress | awaiting_approval
    awaiting_approval → approved | queried | auto_reassigned
    auto_reassigned   → approved | queried
    approved          → (terminal)
"""

from datetime import datetime, timezone

from bire.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Rubrics
# ═════════════════════════════════════════════════════════════════════════════

DD_ITEM_SCORES = frozenset({0, 1, 3, 5})
DD_ITEM_MAX_SCORE = 5

PHASE_1_CONFIG = {
    "name": "Phone / Desk Review",
    "categories": [
        {
            "name": "Business Legitimacy",
            "criteria": [
                "Registration Status",
                "Ownership Structure",
                "Physical Address",
                "Years in Operation",
            ],
        },
        {
            "name": "Operational Fit",
            "criteria": [
                "Sector Alignment",
                "Business Model Clarity",
                "Operational Capacity",
                "Staffing Structure",
            ],
        },
        {
            "name": "Market & Revenue",
            "criteria": [
                "Market Understanding",
                "Customer Base Clarity",
                "Competition Awareness",
                "Revenue Consistency",
            ],
        },
        {
            "name": "Financial Documentation",
            "criteria": [
                "Bank Statements",
                "Mpesa Statements",
                "Bookkeeping Records",
                "Loan Disclosure",
                "Financial Accuracy",
            ],
        },
        {
            "name": "ESG & Safeguards",
            "criteria": [
                "Environmental Risk",
                "Social Practices",
                "Governance Basics",
            ],
        },
    ],
}

PHASE_2_CONFIG = {
    "name": "Physical Site Visit",
    "categories": [
        {
            "name": "Physical Verification",
            "criteria": [
                "Premises Existence",
                "Operational Activity",
                "Safety & Cleanliness",
                "Business Continuity Evidence",
            ],
        },
        {
            "name": "Operations Validation",
            "criteria": [
                "Machinery/Tools",
                "Inventory Levels",
                "Production Capacity Reality",
                "Workforce Presence",
                "Operational Workflow",
            ],
        },
        {
            "name": "Financial Validation",
            "criteria": [
                "Sales Records",
                "Mpesa/POS Activity",
                "Bank Activity",
                "Loan Verification",
                "Cashflow Stability",
            ],
        },
        {
            "name": "Governance and HR",
            "criteria": [
                "Staff Interviews",
                "Founder Involvement",
                "Role Clarity",
            ],
        },
        {
            "name": "ESG & Safeguards",
            "criteria": [
                "Environmental Practices",
                "Worker Safety",
                "Inclusivity",
            ],
        },
    ],
}

PHASE_CONFIGS = {1: PHASE_1_CONFIG, 2: PHASE_2_CONFIG}


def phase_criteria(phase: int) -> dict[str, str]:
    """Map every criterion of a phase rubric to its category name."""
    config = PHASE_CONFIGS[phase]
    return {
        criterion: category["name"]
        for category in config["categories"]
        for criterion in category["criteria"]
    }


def phase_max_score(phase: int) -> int:
    return len(phase_criteria(phase)) * DD_ITEM_MAX_SCORE


# ═════════════════════════════════════════════════════════════════════════════
# Status machine
# ═════════════════════════════════════════════════════════════════════════════

DD_STATUSES = (
    "pending",
    "in_progress",
    "awaiting_approval",
    "approved",
    "queried",
    "auto_reassigned",
)

DD_TRANSITIONS = {
    "pending": ["in_progress"],
    "in_progress": ["awaiting_approval"],
    "queried": ["in_progress", "awaiting_approval"],
    "awaiting_approval": ["approved", "queried", "auto_reassigned"],
    "auto_reassigned": ["approved", "queried"],
    "approved": [],
}

# Statuses in which the assigned validator may act
VALIDATOR_ACTIONABLE_STATUSES = ("awaiting_approval", "auto_reassigned")
VALIDATOR_ACTIONS = frozenset({"approved", "queried"})
PHASE_STATUSES = ("pending", "in_progress", "completed")
FINAL_VERDICTS = frozenset({"pass", "fail"})


def validate_dd_transition(old_status: str, new_status: str) -> bool:
    """Return True if DD status ``old_status → new_status`` is allowed."""
    return new_status in DD_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# Models
# ═════════════════════════════════════════════════════════════════════════════


class DueDiligenceRecord(db.Model):
    """DD assessment for one application that cleared the qualification threshold."""

    __tablename__ = "due_diligence_records"
    __table_args__ = (
        db.CheckConstraint(
            "dd_status IN ('pending','in_progress','awaiting_approval',"
            "'approved','queried','auto_reassigned')",
            name="ck_dd_records_status",
        ),
        db.Index("ix_dd_records_status_deadline", "dd_status", "approval_deadline"),
    )

    id = db.Column(db.Integer, primary_key=True)
    application_id = db.Column(
        db.Integer, db.ForeignKey("applications.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )

    # ── Phase scoring ─────────────────────────────────────────────────────
    phase1_score = db.Column(db.Integer, nullable=True)
    phase1_notes = db.Column(db.Text, nullable=True)
    phase1_status = db.Column(db.String(20), nullable=False, default="pending")
    phase2_score = db.Column(db.Integer, nullable=True)
    phase2_notes = db.Column(db.Text, nullable=True)
    phase2_status = db.Column(db.String(20), nullable=False, default="pending")

    dd_status = db.Column(db.String(30), nullable=False, default="pending")

    # ── Primary reviewer ──────────────────────────────────────────────────
    primary_reviewer_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    primary_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # ── Validator approval gate ───────────────────────────────────────────
    validator_reviewer_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    validator_action = db.Column(
        db.String(20), nullable=True,
        comment="approved | queried",
    )
    validator_comments = db.Column(db.Text, nullable=True)
    validator_action_at = db.Column(db.DateTime(timezone=True), nullable=True)
    previous_validator_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Validator whose approval window lapsed",
    )
    reassignment_count = db.Column(db.Integer, nullable=False, default=0)
    approval_deadline = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Set when the record enters awaiting_approval",
    )

    # ── Oversight-initiated entry ─────────────────────────────────────────
    is_oversight_initiated = db.Column(db.Boolean, nullable=False, default=False)
    oversight_justification = db.Column(db.Text, nullable=True)
    oversight_admin_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    oversight_flagged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    score_disparity = db.Column(
        db.Float, nullable=True,
        comment="|aggregate review score - DD score|",
    )

    # ── Final verdict ─────────────────────────────────────────────────────
    final_verdict = db.Column(db.String(10), nullable=True, comment="pass | fail")
    final_reason = db.Column(db.Text, nullable=True)
    final_decision_by = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    final_decision_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    application = db.relationship(
        "Application", backref=db.backref("due_diligence", uselist=False),
    )
    items = db.relationship(
        "DueDiligenceItem", backref="record", cascade="all, delete-orphan",
        order_by="DueDiligenceItem.id",
    )

    @property
    def dd_score(self):
        """Phase 1 score, averaged with Phase 2 once the site visit is complete."""
        if self.phase1_score is None:
            return None
        if self.phase2_status == "completed" and self.phase2_score is not None:
            return (self.phase1_score + self.phase2_score) / 2
        return float(self.phase1_score)

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "application_id": self.application_id,
            "dd_status": self.dd_status,
            "phase1_score": self.phase1_score,
            "phase1_notes": self.phase1_notes,
            "phase1_status": self.phase1_status,
            "phase2_score": self.phase2_score,
            "phase2_notes": self.phase2_notes,
            "phase2_status": self.phase2_status,
            "dd_score": self.dd_score,
            "primary_reviewer_id": self.primary_reviewer_id,
            "primary_reviewed_at": (
                self.primary_reviewed_at.isoformat() if self.primary_reviewed_at else None
            ),
            "validator_reviewer_id": self.validator_reviewer_id,
            "validator_action": self.validator_action,
            "validator_comments": self.validator_comments,
            "validator_action_at": (
                self.validator_action_at.isoformat() if self.validator_action_at else None
            ),
            "previous_validator_id": self.previous_validator_id,
            "reassignment_count": self.reassignment_count,
            "approval_deadline": (
                self.approval_deadline.isoformat() if self.approval_deadline else None
            ),
            "is_oversight_initiated": self.is_oversight_initiated,
            "oversight_justification": self.oversight_justification,
            "oversight_admin_id": self.oversight_admin_id,
            "oversight_flagged_at": (
                self.oversight_flagged_at.isoformat() if self.oversight_flagged_at else None
            ),
            "score_disparity": self.score_disparity,
            "final_verdict": self.final_verdict,
            "final_reason": self.final_reason,
            "final_decision_by": self.final_decision_by,
            "final_decision_at": (
                self.final_decision_at.isoformat() if self.final_decision_at else None
            ),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<DueDiligenceRecord app={self.application_id} [{self.dd_status}]>"


class DueDiligenceItem(db.Model):
    """Score for one rubric criterion."""

    __tablename__ = "due_diligence_items"
    __table_args__ = (
        db.UniqueConstraint(
            "dd_record_id", "phase", "criterion_name", name="uq_dd_item_criterion",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    dd_record_id = db.Column(
        db.Integer, db.ForeignKey("due_diligence_records.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    phase = db.Column(db.Integer, nullable=False, comment="1 = desk review, 2 = site visit")
    category = db.Column(db.String(100), nullable=False)
    criterion_name = db.Column(db.String(150), nullable=False)
    score = db.Column(db.Integer, nullable=True, comment="0 | 1 | 3 | 5")
    comments = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "phase": self.phase,
            "category": self.category,
            "criterion_name": self.criterion_name,
            "score": self.score,
            "comments": self.comments,
        }

    def __repr__(self):
        return f"<DueDiligenceItem p{self.phase} {self.criterion_name}={self.score}>"
