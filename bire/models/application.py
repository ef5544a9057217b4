"""
Application domain models and the application status machine.

Models:
    - Applicant: the person behind an application (1:1 with Business)
    - Business: the enterprise applying (1:1 with Application)
    - Application: one grant application and its lifecycle ``status``

APPLICATION_TRANSITIONS is the only place the forward workflow is declared.
Every status mutation is gated by ``can_transition`` or goes through the
audited administrative override in ``application_lifecycle.force_transition``.
"""

from datetime import datetime, timezone

from bire.models import db


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Status machine
# ═════════════════════════════════════════════════════════════════════════════

APPLICATION_STATUSES = (
    "draft",
    "submitted",
    "under_review",
    "pending_senior_review",
    "scoring_phase",
    "shortlisted",
    "dragons_den",
    "finalist",
    "approved",
    "rejected",
)

APPLICATION_TRANSITIONS = {
    "draft": ["submitted"],
    "submitted": ["under_review", "pending_senior_review", "rejected"],
    "under_review": ["pending_senior_review", "rejected"],
    "pending_senior_review": ["scoring_phase", "approved", "rejected"],
    "scoring_phase": ["shortlisted", "dragons_den", "approved", "rejected"],
    "shortlisted": ["dragons_den", "finalist", "rejected"],
    "dragons_den": ["finalist", "rejected"],
    "finalist": ["approved", "rejected"],
    "approved": [],
    "rejected": [],
}

TERMINAL_STATUSES = frozenset({"approved", "rejected"})

# First-pass review is open while the application waits for R1
R1_REVIEWABLE_STATUSES = ("submitted", "under_review")
R2_REVIEWABLE_STATUSES = ("pending_senior_review",)

VALID_TRACKS = frozenset({"foundation", "acceleration"})


def can_transition(from_status: str, to_status: str) -> bool:
    """Return True if ``from_status → to_status`` is a normal workflow edge."""
    return to_status in APPLICATION_TRANSITIONS.get(from_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# Models
# ═════════════════════════════════════════════════════════════════════════════


class Applicant(db.Model):
    """Contact details of the person submitting an application."""

    __tablename__ = "applicants"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone_number = db.Column(db.String(40), nullable=True)
    gender = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "gender": self.gender,
        }

    def __repr__(self):
        return f"<Applicant {self.id}: {self.full_name}>"


class Business(db.Model):
    """The enterprise an application is made for."""

    __tablename__ = "businesses"

    id = db.Column(db.Integer, primary_key=True)
    applicant_id = db.Column(
        db.Integer, db.ForeignKey("applicants.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    name = db.Column(db.String(255), nullable=False)
    sector = db.Column(db.String(100), nullable=True)
    county = db.Column(db.String(100), nullable=True)
    city = db.Column(db.String(100), nullable=False, default="")
    country = db.Column(db.String(100), nullable=False, default="Kenya")
    description = db.Column(db.Text, nullable=True)
    revenue_last_year = db.Column(db.Numeric(14, 2), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    applicant = db.relationship("Applicant", backref=db.backref("business", uselist=False))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "sector": self.sector,
            "county": self.county,
            "city": self.city,
            "country": self.country,
            "description": self.description,
            "revenue_last_year": (
                float(self.revenue_last_year) if self.revenue_last_year is not None else None
            ),
        }

    def __repr__(self):
        return f"<Business {self.id}: {self.name}>"


class Application(db.Model):
    """A grant application moving through the review workflow."""

    __tablename__ = "applications"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','under_review','pending_senior_review',"
            "'scoring_phase','shortlisted','dragons_den','finalist','approved','rejected')",
            name="ck_applications_status",
        ),
        db.Index("ix_applications_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(
        db.Integer, db.ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    status = db.Column(db.String(30), nullable=False, default="draft")
    track = db.Column(
        db.String(20), nullable=True,
        comment="foundation | acceleration",
    )
    is_observation_only = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Tracked for reporting only; never assigned or scored",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    business = db.relationship("Business", backref=db.backref("application", uselist=False))

    @property
    def applicant(self):
        return self.business.applicant if self.business else None

    def to_dict(self, include_business=True):
        d = {
            "id": self.id,
            "status": self.status,
            "track": self.track,
            "is_observation_only": self.is_observation_only,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_business and self.business:
            d["business"] = self.business.to_dict()
            d["applicant"] = self.applicant.to_dict() if self.applicant else None
        return d

    def __repr__(self):
        return f"<Application {self.id} [{self.status}]>"
