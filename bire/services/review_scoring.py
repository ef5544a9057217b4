"""
Two-Tier Review Scoring Service

Blind, independent scoring by a first-tier (R1) and second-tier (R2)
reviewer, aggregation into the final score, administrative override and
locking.

Per-application state machine:

    unscored ──R1 submits──▶ R1 scored ──R2 submits──▶ final ──lock──▶ locked
                                                          ▲               │
                                                          └────unlock─────┘

Business rules enforced here (never in blueprints):
    - Scores are bounded to [0, REVIEW_MAX_SCORE].
    - R1 may score only while the application awaits first review; R2 only
      once R1 has scored and the application is pending senior review.
    - The same person can never fill both slots.
    - An assigned slot can only be scored by its assignee (admins exempt).
    - Each slot is written with a conditional UPDATE (score still NULL,
      record not locked) so a concurrent second submission cannot overwrite.
    - final score = (R1 + R2) / 2; eligibility = final ≥ PASS_THRESHOLD
      unless an explicit decision is recorded, which always wins.
    - Score disparity |R1 − R2| above SCORE_DISPARITY_THRESHOLD is an
      advisory flag only.
    - Locked records refuse every score mutation until an admin unlocks.
"""

import logging

from flask import current_app
from sqlalchemy import select, update

from bire.core.exceptions import StateConflictError, ValidationError
from bire.models import db
from bire.models.application import (
    R1_REVIEWABLE_STATUSES,
    R2_REVIEWABLE_STATUSES,
    TERMINAL_STATUSES,
    Application,
    can_transition,
)
from bire.models.audit import write_audit
from bire.models.review import REVIEW_DECISIONS, EligibilityResult
from bire.models.user import ROLE_ADMIN, ROLE_OVERSIGHT, User
from bire.services.application_lifecycle import apply_forced_status, apply_transition
from bire.services.due_diligence import ensure_dd_record
from bire.services.permission import PermissionDenied, check_permission, is_admin
from bire.services.reviewer_assignment import (
    _validate_role,
    assign_next,
    ensure_eligibility_result,
)
from bire.utils.helpers import commit_or_raise, get_or_raise, isoformat, utcnow

logger = logging.getLogger(__name__)

BLIND_LABELS = {"reviewer_1": "Reviewer 1 (Blind)", "reviewer_2": "Reviewer 2 (Blind)"}


# ── Pure helpers ─────────────────────────────────────────────────────────────


def aggregate_score(r1_score: float, r2_score: float) -> float:
    """Final score: plain average of the two independent scores."""
    return (r1_score + r2_score) / 2


def compute_disparity(r1_score, r2_score) -> float | None:
    if r1_score is None or r2_score is None:
        return None
    return abs(r1_score - r2_score)


def is_disparity_flagged(disparity, threshold=None) -> bool:
    """Advisory: True when the two reviewers disagree by more than the threshold."""
    if disparity is None:
        return False
    if threshold is None:
        threshold = current_app.config.get("SCORE_DISPARITY_THRESHOLD", 10)
    return disparity > threshold


def derive_eligibility(total: float, decision: str | None = None) -> bool:
    if decision is not None:
        return decision == "approved"
    return total >= current_app.config.get("PASS_THRESHOLD", 60)


def _coerce_score(score) -> float:
    max_score = current_app.config.get("REVIEW_MAX_SCORE", 100)
    if isinstance(score, bool):
        raise ValidationError("Score must be a number")
    try:
        value = float(score)
    except (TypeError, ValueError):
        raise ValidationError("Score must be a number", details={"score": score}) from None
    if not 0 <= value <= max_score:
        raise ValidationError(
            f"Score must be between 0 and {max_score:g}",
            details={"score": value, "max": max_score},
        )
    return value


def _check_assignee(assigned_id: str | None, actor: dict, action: str) -> None:
    if assigned_id and assigned_id != actor["id"] and not is_admin(actor):
        raise PermissionDenied(actor["id"], action, "application is assigned to another reviewer")


def _qualifies_for_dd(total: float | None) -> bool:
    if total is None:
        return False
    return total >= current_app.config.get("DD_THRESHOLD_PERCENTAGE", 60)


def _conditional_write(result_id: int, score_col, values: dict) -> bool:
    """Write a slot only if it is still empty and the record is unlocked."""
    stmt = (
        update(EligibilityResult)
        .where(
            EligibilityResult.id == result_id,
            score_col.is_(None),
            EligibilityResult.is_locked.is_(False),
        )
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


def submit_review(
    application_id: int,
    actor: dict,
    reviewer_role: str,
    score,
    notes: str | None = None,
    decision: str | None = None,
) -> dict:
    """Record an R1 or R2 score.

    The response for an R2 submission never carries R1's score or notes.

    Raises:
        ValidationError: bad score / decision.
        PermissionDenied: wrong role, not the assignee, same person as R1, or
            a decision from someone who may not override.
        StateConflictError: locked, wrong status, or slot already scored.
    """
    _validate_role(reviewer_role)
    action = "review.submit_r1" if reviewer_role == "reviewer_1" else "review.submit_r2"
    check_permission(actor, action)

    value = _coerce_score(score)
    if decision is not None:
        if decision not in REVIEW_DECISIONS:
            raise ValidationError(
                f"Invalid decision '{decision}'",
                details={"valid_decisions": sorted(REVIEW_DECISIONS)},
            )
        if reviewer_role == "reviewer_1":
            raise ValidationError("A decision can only accompany the second review")
        check_permission(actor, "review.override")

    application = get_or_raise(Application, application_id, "Application")
    if application.is_observation_only:
        raise StateConflictError("Observation-only applications are not scored", application.status)

    result = ensure_eligibility_result(application)
    if result.is_locked:
        raise StateConflictError("Application is locked", application.status)

    if reviewer_role == "reviewer_1":
        return _submit_first_review(application, result, actor, value, notes)
    return _submit_second_review(application, result, actor, value, notes, decision)


def _submit_first_review(application, result, actor, score, notes) -> dict:
    if application.status not in R1_REVIEWABLE_STATUSES:
        raise StateConflictError(
            f"First review is not open while application is '{application.status}'",
            application.status,
        )
    if result.reviewer1_score is not None:
        raise StateConflictError("This application has already been reviewed by Reviewer 1")
    _check_assignee(result.assigned_reviewer1_id, actor, "review.submit_r1")

    now = utcnow()
    values = {
        EligibilityResult.reviewer1_id: actor["id"],
        EligibilityResult.reviewer1_score: score,
        EligibilityResult.reviewer1_notes: notes,
        EligibilityResult.reviewer1_at: now,
        EligibilityResult.updated_at: now,
    }
    if result.assigned_reviewer1_id is None:
        values[EligibilityResult.assigned_reviewer1_id] = actor["id"]
        values[EligibilityResult.assigned_reviewer1_at] = now
    if not _conditional_write(result.id, EligibilityResult.reviewer1_score, values):
        db.session.rollback()
        raise StateConflictError("Reviewer 1 score was recorded or locked concurrently")
    db.session.expire(result)

    apply_transition(application, "pending_senior_review")
    commit_or_raise("EligibilityResult")

    logger.info(
        "R1 review recorded for application %s", application.id,
        extra={
            "application_id": application.id, "reviewer_id": actor["id"],
            "reviewer_role": "reviewer_1", "event_type": "review.submit",
        },
    )

    assigned_r2 = assign_next(application.id, "reviewer_2")
    return {
        "application_id": application.id,
        "reviewer_role": "reviewer_1",
        "score": score,
        "status": application.status,
        "assigned_reviewer2_id": assigned_r2,
    }


def _submit_second_review(application, result, actor, score, notes, decision) -> dict:
    if result.reviewer1_score is None:
        raise StateConflictError("Reviewer 1 must complete their review first", application.status)
    if application.status not in R2_REVIEWABLE_STATUSES:
        raise StateConflictError(
            f"Second review is not open while application is '{application.status}'",
            application.status,
        )
    if result.reviewer2_score is not None:
        raise StateConflictError("This application has already been reviewed by Reviewer 2")
    if actor["id"] in (result.reviewer1_id, result.assigned_reviewer1_id):
        raise PermissionDenied(
            actor["id"], "review.submit_r2",
            "the same reviewer cannot perform both reviews",
        )
    _check_assignee(result.assigned_reviewer2_id, actor, "review.submit_r2")

    total = aggregate_score(result.reviewer1_score, score)
    eligible = derive_eligibility(total, decision)
    now = utcnow()
    values = {
        EligibilityResult.reviewer2_id: actor["id"],
        EligibilityResult.reviewer2_score: score,
        EligibilityResult.reviewer2_notes: notes,
        EligibilityResult.reviewer2_at: now,
        EligibilityResult.total_score: total,
        EligibilityResult.is_eligible: eligible,
        EligibilityResult.overrode_reviewer1: decision is not None,
        EligibilityResult.override_decision: decision,
        EligibilityResult.updated_at: now,
    }
    if result.assigned_reviewer2_id is None:
        values[EligibilityResult.assigned_reviewer2_id] = actor["id"]
        values[EligibilityResult.assigned_reviewer2_at] = now
    if not _conditional_write(result.id, EligibilityResult.reviewer2_score, values):
        db.session.rollback()
        raise StateConflictError("Reviewer 2 score was recorded or locked concurrently")
    db.session.expire(result)

    apply_transition(application, "approved" if eligible else "rejected")
    dd_created = False
    if eligible and _qualifies_for_dd(total):
        ensure_dd_record(application)
        dd_created = True
    commit_or_raise("EligibilityResult")

    disparity = compute_disparity(result.reviewer1_score, score)
    logger.info(
        "R2 review recorded for application %s: total=%.1f eligible=%s",
        application.id, total, eligible,
        extra={
            "application_id": application.id, "reviewer_id": actor["id"],
            "reviewer_role": "reviewer_2", "event_type": "review.submit",
        },
    )
    return {
        "application_id": application.id,
        "reviewer_role": "reviewer_2",
        "score": score,
        "total_score": total,
        "is_eligible": eligible,
        "overrode_reviewer1": decision is not None,
        "status": application.status,
        "disparity_flag": is_disparity_flagged(disparity),
        "due_diligence_created": dd_created,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Blind read model
# ═════════════════════════════════════════════════════════════════════════════


def _reviewer_view(role, reviewer_id, score, notes, submitted_at, visible, names) -> dict:
    label = "Reviewer 1" if role == "reviewer_1" else "Reviewer 2"
    if not visible:
        return {
            "label": BLIND_LABELS[role],
            "reviewer_id": None,
            "reviewer_name": None,
            "score": None,
            "notes": None,
            "submitted": score is not None,
            "submitted_at": None,
        }
    return {
        "label": label,
        "reviewer_id": reviewer_id,
        "reviewer_name": names.get(reviewer_id),
        "score": score,
        "notes": notes,
        "submitted": score is not None,
        "submitted_at": isoformat(submitted_at),
    }


def get_review_status(application_id: int, viewer: dict) -> dict:
    """Scoring state of an application as ``viewer`` is allowed to see it.

    Until both scores exist, each reviewer sees only their own slot; the
    other slot is masked as "Reviewer N (Blind)".  Admin and oversight see
    everything (audit / override contexts).
    """
    check_permission(viewer, "review.view")
    application = get_or_raise(Application, application_id, "Application")
    result = application.eligibility_result

    if result is None:
        return {
            "application_id": application.id,
            "status": application.status,
            "stage": "unscored",
            "reviewer_1": None,
            "reviewer_2": None,
            "total_score": None,
            "is_eligible": None,
            "score_disparity": None,
            "disparity_flag": False,
            "is_locked": False,
        }

    complete = result.is_final
    privileged = viewer.get("role") in (ROLE_ADMIN, ROLE_OVERSIGHT)
    ids = [rid for rid in (result.reviewer1_id, result.reviewer2_id) if rid]
    names = {
        u.id: u.full_name
        for u in db.session.execute(select(User).where(User.id.in_(ids))).scalars()
    } if ids else {}

    r1_visible = complete or privileged or viewer["id"] == result.reviewer1_id
    r2_visible = complete or privileged or viewer["id"] == result.reviewer2_id
    disparity = compute_disparity(result.reviewer1_score, result.reviewer2_score)

    if complete:
        stage = "final"
    elif result.reviewer1_score is not None:
        stage = "r1_scored"
    else:
        stage = "unscored"

    return {
        "application_id": application.id,
        "status": application.status,
        "stage": stage,
        "reviewer_1": _reviewer_view(
            "reviewer_1", result.reviewer1_id, result.reviewer1_score,
            result.reviewer1_notes, result.reviewer1_at, r1_visible, names,
        ),
        "reviewer_2": _reviewer_view(
            "reviewer_2", result.reviewer2_id, result.reviewer2_score,
            result.reviewer2_notes, result.reviewer2_at, r2_visible, names,
        ),
        "total_score": result.total_score if complete else None,
        "is_eligible": result.is_eligible if complete else None,
        "overrode_reviewer1": result.overrode_reviewer1,
        "override_decision": result.override_decision,
        "score_disparity": disparity if (complete or privileged) else None,
        "disparity_flag": is_disparity_flagged(disparity) if (complete or privileged) else False,
        "is_locked": result.is_locked,
        "lock_reason": result.lock_reason,
        "admin_oversight_comment": result.admin_oversight_comment if privileged else None,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Administrative actions
# ═════════════════════════════════════════════════════════════════════════════


def _final_result_or_raise(application: Application) -> EligibilityResult:
    result = application.eligibility_result
    if result is None or not result.is_final:
        raise StateConflictError("Both reviews must be completed first", application.status)
    return result


def _move_to_decision(application: Application, target: str, actor: dict, notes: str) -> None:
    if application.status == target:
        return
    if can_transition(application.status, target):
        apply_transition(application, target)
    else:
        apply_forced_status(application, target, actor, notes)


def override_decision(application_id: int, actor: dict, decision: str, reason: str) -> dict:
    """Record an explicit approve/reject that takes precedence over the average."""
    check_permission(actor, "review.override")
    if decision not in REVIEW_DECISIONS:
        raise ValidationError(
            f"Invalid decision '{decision}'",
            details={"valid_decisions": sorted(REVIEW_DECISIONS)},
        )
    if not (reason or "").strip():
        raise ValidationError("A reason is required to override a review decision")

    application = get_or_raise(Application, application_id, "Application")
    result = _final_result_or_raise(application)
    if result.is_locked:
        raise StateConflictError("Application is locked", application.status)

    old = {"is_eligible": result.is_eligible, "override_decision": result.override_decision}
    result.override_decision = decision
    result.override_reason = reason.strip()
    result.overrode_reviewer1 = True
    result.is_eligible = decision == "approved"
    result.updated_at = utcnow()

    _move_to_decision(application, decision, actor, f"Review override: {reason.strip()}")
    if decision == "approved" and _qualifies_for_dd(result.total_score):
        ensure_dd_record(application)

    write_audit(
        entity_type="eligibility_result",
        entity_id=result.id,
        action="review.override",
        actor_user_id=actor["id"],
        diff={"old": old, "new": {"is_eligible": result.is_eligible, "override_decision": decision},
              "reason": reason.strip()},
    )
    commit_or_raise("EligibilityResult")

    logger.warning(
        "Review decision overridden for application %s → %s", application.id, decision,
        extra={"application_id": application.id, "user_id": actor["id"], "event_type": "review.override"},
    )
    return result.to_dict()


def lock_application(application_id: int, actor: dict, reason: str) -> dict:
    """Freeze scoring of a decided (approved/rejected) application."""
    check_permission(actor, "review.lock")
    if not (reason or "").strip():
        raise ValidationError("A lock reason is required")

    application = get_or_raise(Application, application_id, "Application")
    if application.status not in TERMINAL_STATUSES:
        raise StateConflictError(
            "Only approved or rejected applications can be locked", application.status,
        )
    result = ensure_eligibility_result(application)
    if result.is_locked:
        raise StateConflictError("Application is already locked", application.status)

    result.is_locked = True
    result.locked_by = actor["id"]
    result.locked_at = utcnow()
    result.lock_reason = reason.strip()
    write_audit(
        entity_type="eligibility_result",
        entity_id=result.id,
        action="review.lock",
        actor_user_id=actor["id"],
        diff={"reason": reason.strip()},
    )
    commit_or_raise("EligibilityResult")

    logger.info(
        "Application %s locked", application.id,
        extra={"application_id": application.id, "user_id": actor["id"], "event_type": "review.lock"},
    )
    return result.to_dict()


def unlock_application(application_id: int, actor: dict, reason: str) -> dict:
    """Release a lock so scores may be corrected."""
    check_permission(actor, "review.lock")
    if not (reason or "").strip():
        raise ValidationError("An unlock reason is required")

    application = get_or_raise(Application, application_id, "Application")
    result = application.eligibility_result
    if result is None or not result.is_locked:
        raise StateConflictError("Application is not locked", application.status)

    result.is_locked = False
    result.locked_by = None
    result.locked_at = None
    result.lock_reason = f"Unlocked by admin: {reason.strip()}"
    write_audit(
        entity_type="eligibility_result",
        entity_id=result.id,
        action="review.unlock",
        actor_user_id=actor["id"],
        diff={"reason": reason.strip()},
    )
    commit_or_raise("EligibilityResult")

    logger.info(
        "Application %s unlocked", application.id,
        extra={"application_id": application.id, "user_id": actor["id"], "event_type": "review.unlock"},
    )
    return result.to_dict()


def save_oversight_comment(application_id: int, actor: dict, comment: str) -> dict:
    check_permission(actor, "review.comment")
    application = get_or_raise(Application, application_id, "Application")
    result = ensure_eligibility_result(application)
    result.admin_oversight_comment = (comment or "").strip() or None
    commit_or_raise("EligibilityResult")
    return result.to_dict()


def reconcile_eligibility(actor: dict) -> dict:
    """Recompute aggregates from the stored scores and repair drifted decisions.

    Rejected applications whose recomputed average now passes are approved
    (and enter DD when they qualify).  Locked and overridden records are
    left alone.
    """
    check_permission(actor, "review.reconcile")

    stmt = (
        select(EligibilityResult)
        .where(
            EligibilityResult.reviewer1_score.is_not(None),
            EligibilityResult.reviewer2_score.is_not(None),
            EligibilityResult.is_locked.is_(False),
            EligibilityResult.overrode_reviewer1.is_(False),
        )
        .order_by(EligibilityResult.application_id)
    )
    checked = updated = approved = 0
    for result in db.session.execute(stmt).scalars():
        checked += 1
        total = aggregate_score(result.reviewer1_score, result.reviewer2_score)
        eligible = derive_eligibility(total)
        if result.total_score != total or result.is_eligible != eligible:
            result.total_score = total
            result.is_eligible = eligible
            updated += 1

        application = result.application
        if eligible and application.status == "rejected":
            apply_forced_status(application, "approved", actor, "Reconciled: aggregate meets pass threshold")
            if _qualifies_for_dd(total):
                ensure_dd_record(application)
            approved += 1

    write_audit(
        entity_type="eligibility_result",
        entity_id="*",
        action="review.reconcile",
        actor_user_id=actor["id"],
        diff={"checked": checked, "updated": updated, "approved": approved},
    )
    commit_or_raise("EligibilityResult")

    logger.info(
        "Eligibility reconciled: %d checked, %d updated, %d approved", checked, updated, approved,
        extra={"count": approved, "event_type": "review.reconcile"},
    )
    return {"checked": checked, "updated": updated, "approved": approved}
