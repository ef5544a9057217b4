"""
Application Lifecycle Service

Manages application status transitions with:
  - Transition validation (APPLICATION_TRANSITIONS via can_transition)
  - Permission checks (PERMISSION_MATRIX)
  - Administrative override (force_transition), audited with notes
  - Bulk transitions with per-item error reporting
  - R1 auto-assignment on submission

Every status mutation anywhere in the workflow goes through
``apply_transition`` (gated) or ``force_transition`` (audited).

Usage:
    from bire.services.application_lifecycle import transition_application

    result = transition_application(
        application_id=42,
        to_status="scoring_phase",
        actor={"id": "u-1", "role": "admin"},
        notes="Moved after panel meeting",
    )
"""

import logging

from sqlalchemy import select

from bire.core.exceptions import StateConflictError, ValidationError
from bire.models import db
from bire.models.application import (
    APPLICATION_STATUSES,
    APPLICATION_TRANSITIONS,
    VALID_TRACKS,
    Applicant,
    Application,
    Business,
    can_transition,
)
from bire.models.audit import write_audit
from bire.services.permission import PermissionDenied, check_permission
from bire.utils.helpers import commit_or_raise, get_or_raise, utcnow

logger = logging.getLogger(__name__)


class TransitionError(StateConflictError):
    """Raised when an application status transition is invalid."""

    def __init__(self, application_id: int, current: str, target: str, reason: str | None = None):
        msg = f"Cannot move application {application_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, current_status=current)
        self.application_id = application_id
        self.target_status = target
        self.reason = reason


# ── Helpers ──────────────────────────────────────────────────────────────────


def _set_status(application: Application, to_status: str) -> str:
    old = application.status
    now = utcnow()
    application.status = to_status
    application.updated_at = now
    if to_status == "submitted" and application.submitted_at is None:
        application.submitted_at = now
    return old


def apply_transition(application: Application, to_status: str) -> str:
    """Move an application along a normal workflow edge (no commit).

    Returns the previous status.

    Raises:
        TransitionError: If ``status → to_status`` is not in the table.
    """
    if not can_transition(application.status, to_status):
        raise TransitionError(application.id, application.status, to_status)
    return _set_status(application, to_status)


def apply_forced_status(
    application: Application,
    to_status: str,
    actor: dict | None,
    notes: str | None = None,
) -> str:
    """Set any known status bypassing the table, writing an audit row (no commit)."""
    if to_status not in APPLICATION_STATUSES:
        raise ValidationError(
            f"Unknown status '{to_status}'",
            details={"valid_statuses": list(APPLICATION_STATUSES)},
        )
    old = _set_status(application, to_status)
    write_audit(
        entity_type="application",
        entity_id=application.id,
        action="application.force_transition",
        actor_user_id=actor.get("id") if actor else None,
        diff={"status": {"old": old, "new": to_status}, "notes": notes},
    )
    return old


# ── Creation & submission ────────────────────────────────────────────────────


def create_application(
    actor: dict,
    *,
    business: dict,
    applicant: dict,
    track: str | None = None,
    is_observation_only: bool = False,
    submit: bool = False,
) -> dict:
    """Create Application + Business + Applicant, as draft or directly submitted."""
    check_permission(actor, "application.create")

    missing = [f for f in ("first_name", "last_name", "email") if not (applicant.get(f) or "").strip()]
    if not (business.get("name") or "").strip():
        missing.append("business.name")
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    if track is not None and track not in VALID_TRACKS:
        raise ValidationError(f"Invalid track '{track}'", details={"valid_tracks": sorted(VALID_TRACKS)})

    person = Applicant(
        user_id=actor["id"] if actor.get("role") == "applicant" else applicant.get("user_id"),
        first_name=applicant["first_name"].strip(),
        last_name=applicant["last_name"].strip(),
        email=applicant["email"].strip(),
        phone_number=applicant.get("phone_number"),
        gender=applicant.get("gender"),
    )
    db.session.add(person)
    db.session.flush()

    biz = Business(
        applicant_id=person.id,
        name=business["name"].strip(),
        sector=business.get("sector"),
        county=business.get("county"),
        city=business.get("city") or "",
        country=business.get("country") or "Kenya",
        description=business.get("description"),
        revenue_last_year=business.get("revenue_last_year"),
    )
    db.session.add(biz)
    db.session.flush()

    application = Application(
        business_id=biz.id,
        status="draft",
        track=track,
        is_observation_only=bool(is_observation_only),
    )
    db.session.add(application)
    db.session.flush()
    commit_or_raise("Application")

    logger.info(
        "Application created",
        extra={"application_id": application.id, "user_id": actor["id"], "event_type": "application.create"},
    )

    if submit:
        return submit_application(application.id, actor)
    return application.to_dict()


def submit_application(application_id: int, actor: dict) -> dict:
    """draft → submitted, then try to auto-assign a first reviewer."""
    # Imported here: reviewer_assignment imports this module for status gates
    from bire.services.reviewer_assignment import assign_next

    check_permission(actor, "application.submit")
    application = get_or_raise(Application, application_id, "Application")
    if actor.get("role") == "applicant":
        owner = application.applicant.user_id if application.applicant else None
        if owner != actor["id"]:
            raise PermissionDenied(actor["id"], "application.submit", "not the applicant")
    apply_transition(application, "submitted")
    commit_or_raise("Application")

    logger.info(
        "Application submitted",
        extra={"application_id": application.id, "event_type": "application.submit"},
    )

    assigned_to = None
    if not application.is_observation_only:
        assigned_to = assign_next(application.id, "reviewer_1")

    result = application.to_dict()
    result["assigned_reviewer1_id"] = assigned_to
    return result


# ── Transitions ──────────────────────────────────────────────────────────────


def transition_application(
    application_id: int,
    to_status: str,
    actor: dict,
    notes: str | None = None,
) -> dict:
    """Move an application along a normal forward edge (admin)."""
    check_permission(actor, "application.transition")
    application = get_or_raise(Application, application_id, "Application")
    old = apply_transition(application, to_status)
    if notes:
        write_audit(
            entity_type="application",
            entity_id=application.id,
            action="application.transition",
            actor_user_id=actor["id"],
            diff={"status": {"old": old, "new": to_status}, "notes": notes},
        )
    commit_or_raise("Application")

    logger.info(
        "Application %s: %s → %s", application.id, old, to_status,
        extra={"application_id": application.id, "from_status": old, "to_status": to_status},
    )
    return application.to_dict()


def force_transition(
    application_id: int,
    to_status: str,
    actor: dict,
    notes: str | None = None,
) -> dict:
    """Administrative override: move to any status, audited with notes."""
    check_permission(actor, "application.force_transition")
    application = get_or_raise(Application, application_id, "Application")
    old = apply_forced_status(application, to_status, actor, notes)
    commit_or_raise("Application")

    logger.warning(
        "Application %s forced: %s → %s", application.id, old, to_status,
        extra={
            "application_id": application.id, "from_status": old,
            "to_status": to_status, "user_id": actor["id"],
            "event_type": "application.force_transition",
        },
    )
    return application.to_dict()


def bulk_transition(
    application_ids: list,
    to_status: str,
    actor: dict,
    notes: str | None = None,
    force: bool = True,
) -> dict:
    """Apply the same target status to many applications.

    Each item is validated on its own; a missing id or refused edge is
    reported in ``errors`` and never blocks the siblings.

    Returns:
        {"success": [ids], "errors": [{"id", "error"}], "success_count", "error_count"}
    """
    check_permission(actor, "application.force_transition" if force else "application.transition")
    if to_status not in APPLICATION_STATUSES:
        raise ValidationError(f"Unknown status '{to_status}'")

    results = {"success": [], "errors": []}

    for raw_id in application_ids:
        try:
            app_id = int(raw_id)
        except (TypeError, ValueError):
            results["errors"].append({"id": raw_id, "error": "Invalid application id"})
            continue

        application = db.session.get(Application, app_id)
        if application is None:
            results["errors"].append({"id": app_id, "error": f"Application {app_id} not found"})
            continue

        if not force and not can_transition(application.status, to_status):
            results["errors"].append({
                "id": app_id,
                "error": f"Cannot move from '{application.status}' to '{to_status}'",
            })
            continue

        try:
            with db.session.begin_nested():
                if force:
                    apply_forced_status(application, to_status, actor, notes)
                else:
                    old = apply_transition(application, to_status)
                    if notes:
                        write_audit(
                            entity_type="application",
                            entity_id=app_id,
                            action="application.transition",
                            actor_user_id=actor["id"],
                            diff={"status": {"old": old, "new": to_status}, "notes": notes},
                        )
        except StateConflictError as exc:
            results["errors"].append({"id": app_id, "error": str(exc)})
            continue
        results["success"].append(app_id)

    commit_or_raise("Application")

    results["success_count"] = len(results["success"])
    results["error_count"] = len(results["errors"])
    logger.info(
        "Bulk transition to %s: %d ok, %d errors",
        to_status, results["success_count"], results["error_count"],
        extra={"to_status": to_status, "count": results["success_count"], "event_type": "application.bulk"},
    )
    return results


def get_available_transitions(application_id: int) -> dict:
    """Return the forward targets reachable from the current status."""
    application = get_or_raise(Application, application_id, "Application")
    return {
        "application_id": application.id,
        "current_status": application.status,
        "available": list(APPLICATION_TRANSITIONS.get(application.status, [])),
    }


# ── Read models ──────────────────────────────────────────────────────────────


def get_application(application_id: int, actor: dict) -> dict:
    check_permission(actor, "application.view")
    application = get_or_raise(Application, application_id, "Application")
    return application.to_dict()


def list_applications(
    actor: dict,
    *,
    status: str | None = None,
    track: str | None = None,
    observation_only: bool | None = None,
) -> list[dict]:
    """List applications, newest submission first.

    ``observation_only=True`` returns the observation list (tracked for
    reporting, never scored); ``False`` excludes them.
    """
    check_permission(actor, "application.view")
    stmt = select(Application)
    if status:
        stmt = stmt.where(Application.status == status)
    if track:
        stmt = stmt.where(Application.track == track)
    if observation_only is not None:
        stmt = stmt.where(Application.is_observation_only.is_(observation_only))
    stmt = stmt.order_by(Application.submitted_at.desc(), Application.id.desc())
    return [a.to_dict() for a in db.session.execute(stmt).scalars()]
