"""
Reviewer Assignment Service

Distributes applications across the active R1 and R2 reviewer pools.

Design decisions:
    - Load is never cached.  A reviewer's load is the number of OPEN
      assignments (slot assigned, score not yet submitted), counted from
      ``eligibility_results`` at call time.  The snapshot is adjusted in
      memory only after a successful claim, inside the same transaction.
    - Selection is a pure function (``select_least_loaded``): lowest load,
      ties broken by lowest reviewer id, so bulk runs are reproducible.
    - Every assignment write is an atomic claim:
          UPDATE eligibility_results SET assigned_reviewerN_id = :r
          WHERE id = :id AND assigned_reviewerN_id IS NULL
      A concurrent bulk run that already claimed the row makes rowcount 0
      and the row is skipped, so no application is ever double-assigned.
    - Candidates are processed in ascending application id.
    - No active reviewers is a benign no-op (0 assigned), never an error.
    - Observation-only applications are never assigned.

Usage:
    from bire.services.reviewer_assignment import bulk_assign

    result = bulk_assign("reviewer_1", actor=admin)
    # {"role": "reviewer_1", "candidates": 12, "assigned": 12, "skipped": 0, ...}
"""

import logging
import math

from sqlalchemy import func, select, update

from bire.core.exceptions import NotFoundError, ValidationError
from bire.models import db
from bire.models.application import (
    R1_REVIEWABLE_STATUSES,
    R2_REVIEWABLE_STATUSES,
    Application,
)
from bire.models.audit import write_audit
from bire.models.review import SLOT_COLUMNS, EligibilityResult, ReviewerQueueEntry
from bire.models.user import REVIEWER_ROLES, User
from bire.services.permission import PermissionDenied, check_permission
from bire.utils.helpers import commit_or_raise, utcnow

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _validate_role(role: str) -> None:
    if role not in REVIEWER_ROLES:
        raise ValidationError(
            f"Invalid reviewer role '{role}'",
            details={"valid_roles": list(REVIEWER_ROLES)},
        )


def _slot(role: str):
    """Return the (assigned, assigned_at, scorer, score) columns of a role's slot."""
    assigned_attr, scorer_attr, score_attr = SLOT_COLUMNS[role]
    return (
        getattr(EligibilityResult, assigned_attr),
        getattr(EligibilityResult, assigned_attr.replace("_id", "_at")),
        getattr(EligibilityResult, scorer_attr),
        getattr(EligibilityResult, score_attr),
    )


def select_least_loaded(loads: dict[str, int], exclude=()) -> str | None:
    """Pick the reviewer with the lowest load; ties go to the lowest reviewer id.

    Pure function over a load snapshot; callers own the snapshot.
    """
    pool = [(load, rid) for rid, load in loads.items() if rid not in exclude]
    if not pool:
        return None
    return min(pool)[1]


def _active_entries(role: str) -> dict[str, ReviewerQueueEntry]:
    """Active queue entries of a role whose user account is active, keyed by reviewer id."""
    stmt = (
        select(ReviewerQueueEntry)
        .join(User, User.id == ReviewerQueueEntry.reviewer_id)
        .where(
            ReviewerQueueEntry.reviewer_role == role,
            ReviewerQueueEntry.is_active.is_(True),
            User.is_active.is_(True),
        )
        .order_by(ReviewerQueueEntry.reviewer_id)
    )
    return {e.reviewer_id: e for e in db.session.execute(stmt).scalars()}


def count_open_assignments(role: str, reviewer_ids=None) -> dict[str, int]:
    """Open assignments (assigned, unscored) per reviewer, counted from rows."""
    assigned_col, _, _, score_col = _slot(role)
    stmt = (
        select(assigned_col, func.count(EligibilityResult.id))
        .where(assigned_col.is_not(None), score_col.is_(None))
        .group_by(assigned_col)
    )
    if reviewer_ids is not None:
        stmt = stmt.where(assigned_col.in_(list(reviewer_ids)))
    return {rid: n for rid, n in db.session.execute(stmt).all()}


def count_all_assignments(role: str) -> dict[str, int]:
    """Every assignment row per reviewer (scored or not)."""
    assigned_col, _, _, _ = _slot(role)
    stmt = (
        select(assigned_col, func.count(EligibilityResult.id))
        .where(assigned_col.is_not(None))
        .group_by(assigned_col)
    )
    return {rid: n for rid, n in db.session.execute(stmt).all()}


def _ensure_results_for_r1() -> int:
    """Create the scoring record for R1-reviewable applications that lack one."""
    stmt = (
        select(Application.id)
        .outerjoin(EligibilityResult, EligibilityResult.application_id == Application.id)
        .where(
            Application.status.in_(R1_REVIEWABLE_STATUSES),
            Application.is_observation_only.is_(False),
            EligibilityResult.id.is_(None),
        )
        .order_by(Application.id)
    )
    created = 0
    for app_id in db.session.execute(stmt).scalars().all():
        db.session.add(EligibilityResult(application_id=app_id))
        created += 1
    if created:
        db.session.flush()
    return created


def ensure_eligibility_result(application: Application) -> EligibilityResult:
    """Return the application's scoring record, creating it if needed (no commit)."""
    result = application.eligibility_result
    if result is None:
        result = EligibilityResult(application=application)
        db.session.add(result)
        db.session.flush()
    return result


def _candidate_filter(role: str):
    """WHERE clauses selecting results that need a reviewer of ``role``."""
    assigned_col, _, _, score_col = _slot(role)
    clauses = [
        assigned_col.is_(None),
        score_col.is_(None),
        Application.is_observation_only.is_(False),
    ]
    if role == "reviewer_1":
        clauses.append(Application.status.in_(R1_REVIEWABLE_STATUSES))
    else:
        clauses.append(Application.status.in_(R2_REVIEWABLE_STATUSES))
        clauses.append(EligibilityResult.reviewer1_score.is_not(None))
    return clauses


def _candidates(role: str) -> list[EligibilityResult]:
    if role == "reviewer_1":
        _ensure_results_for_r1()
    stmt = (
        select(EligibilityResult)
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(*_candidate_filter(role))
        .order_by(EligibilityResult.application_id)
    )
    return list(db.session.execute(stmt).scalars())


def _excluded_for(role: str, result: EligibilityResult) -> set:
    """R2 may never be the person who holds or scored the R1 slot."""
    if role != "reviewer_2":
        return set()
    return {rid for rid in (result.assigned_reviewer1_id, result.reviewer1_id) if rid}


def _claim(result_id: int, role: str, reviewer_id: str, now) -> bool:
    """Atomically assign ``reviewer_id`` only if the slot is still empty."""
    assigned_col, assigned_at_col, _, _ = _slot(role)
    stmt = (
        update(EligibilityResult)
        .where(EligibilityResult.id == result_id, assigned_col.is_(None))
        .values({assigned_col: reviewer_id, assigned_at_col: now, EligibilityResult.updated_at: now})
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _assign_greedy(role: str, candidates, loads: dict[str, int], entries) -> tuple[int, int]:
    """Assign each candidate to the currently least-loaded reviewer.

    Returns (assigned, skipped).  ``loads`` is mutated in place.
    """
    assigned = skipped = 0
    now = utcnow()
    for result in candidates:
        reviewer_id = select_least_loaded(loads, exclude=_excluded_for(role, result))
        if reviewer_id is None:
            skipped += 1
            continue
        if not _claim(result.id, role, reviewer_id, now):
            # Claimed by a concurrent run between read and write
            skipped += 1
            continue
        loads[reviewer_id] += 1
        entries[reviewer_id].last_assigned_at = now
        db.session.expire(result)
        assigned += 1
    return assigned, skipped


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def initialize_queue(actor: dict) -> dict:
    """Create a queue entry for every reviewer_1/reviewer_2 user lacking one.

    Idempotent: existing entries (and their active flag) are untouched.
    """
    check_permission(actor, "assignment.manage")

    existing = {
        (e.reviewer_id, e.reviewer_role)
        for e in db.session.execute(select(ReviewerQueueEntry)).scalars()
    }
    reviewers = db.session.execute(
        select(User).where(User.role.in_(REVIEWER_ROLES)).order_by(User.id)
    ).scalars()

    added = 0
    for user in reviewers:
        if (user.id, user.role) in existing:
            continue
        db.session.add(ReviewerQueueEntry(reviewer_id=user.id, reviewer_role=user.role))
        added += 1

    commit_or_raise("ReviewerQueueEntry")
    logger.info("Reviewer queue initialised: %d added", added, extra={"count": added})
    return {"added": added, "message": f"Added {added} reviewers to the assignment queue"}


def bulk_assign(role: str, actor: dict) -> dict:
    """Assign every unassigned candidate of ``role`` to the least-loaded active reviewer."""
    check_permission(actor, "assignment.manage")
    _validate_role(role)

    entries = _active_entries(role)
    candidates = _candidates(role)
    if not entries or not candidates:
        db.session.commit()
        reason = "No active reviewers available" if not entries else "No unassigned applications found"
        return {"role": role, "candidates": len(candidates), "assigned": 0, "skipped": len(candidates),
                "message": reason}

    open_loads = count_open_assignments(role, entries.keys())
    loads = {rid: open_loads.get(rid, 0) for rid in entries}
    assigned, skipped = _assign_greedy(role, candidates, loads, entries)
    commit_or_raise("EligibilityResult")

    logger.info(
        "Bulk assign %s: %d of %d", role, assigned, len(candidates),
        extra={"reviewer_role": role, "count": assigned, "event_type": "assignment.bulk"},
    )
    return {
        "role": role,
        "candidates": len(candidates),
        "assigned": assigned,
        "skipped": skipped,
        "message": f"Assigned {assigned} of {len(candidates)} applications",
    }


def redistribute(role: str, actor: dict) -> dict:
    """Clear the role's open assignments and spread them again from zero load.

    Destructive and unconditional: confirmation is the caller's job.
    Submitted scores are never touched; only slots still awaiting a score
    are cleared.
    """
    check_permission(actor, "assignment.manage")
    _validate_role(role)

    assigned_col, assigned_at_col, _, score_col = _slot(role)
    scope = select(Application.id).where(Application.is_observation_only.is_(False))
    if role == "reviewer_1":
        scope = scope.where(Application.status.in_(R1_REVIEWABLE_STATUSES))
    else:
        scope = scope.where(Application.status.in_(R2_REVIEWABLE_STATUSES))

    cleared = db.session.execute(
        update(EligibilityResult)
        .where(
            assigned_col.is_not(None),
            score_col.is_(None),
            EligibilityResult.application_id.in_(scope),
        )
        .values({assigned_col: None, assigned_at_col: None})
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.expire_all()

    entries = _active_entries(role)
    for entry in entries.values():
        entry.last_assigned_at = None
    candidates = _candidates(role)
    loads = {rid: 0 for rid in entries}
    assigned, skipped = _assign_greedy(role, candidates, loads, entries)

    write_audit(
        entity_type="reviewer_queue",
        entity_id=role,
        action="assignment.redistribute",
        actor_user_id=actor["id"],
        diff={"cleared": cleared, "assigned": assigned, "reviewers": len(entries)},
    )
    commit_or_raise("EligibilityResult")

    logger.warning(
        "Redistributed %s: cleared %d, assigned %d among %d reviewers",
        role, cleared, assigned, len(entries),
        extra={"reviewer_role": role, "count": assigned, "event_type": "assignment.redistribute"},
    )
    return {
        "role": role,
        "cleared": cleared,
        "redistributed": assigned,
        "skipped": skipped,
        "message": f"Redistributed {assigned} applications evenly among {len(entries)} active reviewers",
    }


def assign_next(application_id: int, role: str) -> str | None:
    """Assign one application to the least-loaded active reviewer of ``role``.

    Called after submission (R1) and after the R1 score lands (R2).
    Returns the reviewer id, or None when nothing was assigned.
    """
    _validate_role(role)
    application = db.session.get(Application, application_id)
    if application is None:
        raise NotFoundError("Application", application_id)

    result = ensure_eligibility_result(application)
    eligible = db.session.execute(
        select(EligibilityResult.id)
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(EligibilityResult.id == result.id, *_candidate_filter(role))
    ).first()
    if eligible is None:
        db.session.commit()
        return None

    entries = _active_entries(role)
    open_loads = count_open_assignments(role, entries.keys())
    loads = {rid: open_loads.get(rid, 0) for rid in entries}
    reviewer_id = select_least_loaded(loads, exclude=_excluded_for(role, result))
    if reviewer_id is None or not _claim(result.id, role, reviewer_id, utcnow()):
        db.session.commit()
        logger.info(
            "No %s available for application %s", role, application_id,
            extra={"application_id": application_id, "reviewer_role": role},
        )
        return None

    entries[reviewer_id].last_assigned_at = utcnow()
    db.session.expire(result)
    commit_or_raise("EligibilityResult")
    logger.info(
        "Application %s assigned to %s %s", application_id, role, reviewer_id,
        extra={"application_id": application_id, "reviewer_id": reviewer_id, "reviewer_role": role},
    )
    return reviewer_id


def toggle_reviewer_active(reviewer_id: str, active: bool, actor: dict) -> list[dict]:
    """Include or exclude a reviewer from future assignment runs.

    Existing assignments are left exactly as they are.
    """
    check_permission(actor, "assignment.manage")
    entries = db.session.execute(
        select(ReviewerQueueEntry).where(ReviewerQueueEntry.reviewer_id == reviewer_id)
    ).scalars().all()
    if not entries:
        raise NotFoundError("Reviewer", reviewer_id)

    for entry in entries:
        entry.is_active = bool(active)
    write_audit(
        entity_type="reviewer_queue",
        entity_id=reviewer_id,
        action="assignment.toggle_active",
        actor_user_id=actor["id"],
        diff={"is_active": bool(active)},
    )
    commit_or_raise("ReviewerQueueEntry")

    logger.info(
        "Reviewer %s %s", reviewer_id, "activated" if active else "deactivated",
        extra={"reviewer_id": reviewer_id, "event_type": "assignment.toggle_active"},
    )
    return [e.to_dict() for e in entries]


def get_assignment_stats(actor: dict) -> dict:
    """Totals plus per-reviewer breakdown, all derived from assignment rows."""
    check_permission(actor, "assignment.stats")

    in_scope = (
        Application.is_observation_only.is_(False),
        Application.status != "draft",
    )
    total = db.session.execute(
        select(func.count(Application.id)).where(*in_scope)
    ).scalar_one()
    assigned_r1 = db.session.execute(
        select(func.count(EligibilityResult.id))
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(*in_scope, EligibilityResult.assigned_reviewer1_id.is_not(None))
    ).scalar_one()
    assigned_r2 = db.session.execute(
        select(func.count(EligibilityResult.id))
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(*in_scope, EligibilityResult.assigned_reviewer2_id.is_not(None))
    ).scalar_one()

    reviewer_stats = []
    for role in REVIEWER_ROLES:
        all_counts = count_all_assignments(role)
        open_counts = count_open_assignments(role)
        rows = db.session.execute(
            select(ReviewerQueueEntry, User)
            .join(User, User.id == ReviewerQueueEntry.reviewer_id)
            .where(ReviewerQueueEntry.reviewer_role == role)
            .order_by(ReviewerQueueEntry.reviewer_id)
        ).all()
        for entry, user in rows:
            reviewer_stats.append({
                "reviewer_id": entry.reviewer_id,
                "reviewer_name": user.full_name,
                "role": role,
                "is_active": entry.is_active,
                "assignment_count": all_counts.get(entry.reviewer_id, 0),
                "pending": open_counts.get(entry.reviewer_id, 0),
            })

    return {
        "total_applications": total,
        "assigned_to_reviewer1": assigned_r1,
        "assigned_to_reviewer2": assigned_r2,
        "unassigned": total - assigned_r1,
        "reviewer_stats": reviewer_stats,
    }


def get_assigned_applications(
    actor: dict,
    *,
    page: int = 1,
    per_page: int = 20,
    track: str | None = None,
) -> dict:
    """The calling reviewer's own work list, oldest assignment first."""
    check_permission(actor, "assignment.view_own")
    role = actor["role"]
    if role not in REVIEWER_ROLES:
        raise PermissionDenied(actor["id"], "assignment.view_own", "not a reviewer")

    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), 100)
    assigned_col, assigned_at_col, _, score_col = _slot(role)

    base = (
        select(EligibilityResult, Application)
        .join(Application, Application.id == EligibilityResult.application_id)
        .where(assigned_col == actor["id"])
    )
    if track and track != "all":
        base = base.where(Application.track == track)

    total = db.session.execute(
        select(func.count()).select_from(base.subquery())
    ).scalar_one()
    rows = db.session.execute(
        base.order_by(assigned_at_col, EligibilityResult.application_id)
        .limit(per_page).offset((page - 1) * per_page)
    ).all()

    items = []
    for result, application in rows:
        assigned_at = getattr(result, SLOT_COLUMNS[role][0].replace("_id", "_at"))
        items.append({
            "id": result.id,
            "application_id": application.id,
            "business_name": application.business.name if application.business else None,
            "track": application.track,
            "status": application.status,
            "submitted_at": application.submitted_at.isoformat() if application.submitted_at else None,
            "assigned_at": assigned_at.isoformat() if assigned_at else None,
            "is_first_review": role == "reviewer_1",
            "is_scored": getattr(result, SLOT_COLUMNS[role][2]) is not None,
        })

    return {
        "applications": items,
        "total": total,
        "page": page,
        "total_pages": math.ceil(total / per_page) if total else 0,
    }
