"""
Reviewer diagnostics.

Recomputes every reviewer's workload from ``eligibility_results`` so an
admin can spot drift between assignments and submitted scores, and finds
staff accounts that look like the same person registered twice.
Read-only.
"""

import re
from collections import defaultdict

from sqlalchemy import and_, func, or_, select

from bire.models import db
from bire.models.application import Application, Business
from bire.models.review import EligibilityResult
from bire.models.user import REVIEWER_ROLES, STAFF_ROLES, User
from bire.services.permission import check_permission


def _count_by(column, *where) -> dict[str, int]:
    stmt = (
        select(column, func.count(EligibilityResult.id))
        .where(column.is_not(None), *where)
        .group_by(column)
    )
    return {rid: n for rid, n in db.session.execute(stmt).all()}


def _slot_counts(assigned_col, scorer_col, score_col) -> dict[str, dict[str, int]]:
    return {
        "assigned": _count_by(assigned_col),
        "completed": _count_by(assigned_col, score_col.is_not(None)),
        "pending": _count_by(assigned_col, score_col.is_(None)),
        "scored": _count_by(scorer_col, score_col.is_not(None)),
    }


def _slot_summary(counts: dict, reviewer_id: str) -> dict:
    slot = {key: counts[key].get(reviewer_id, 0) for key in ("assigned", "completed", "pending", "scored")}
    # scored != completed: someone scored a slot assigned to another reviewer
    slot["drift"] = (
        slot["assigned"] != slot["completed"] + slot["pending"]
        or slot["scored"] != slot["completed"]
    )
    return slot


def get_reviewer_diagnostics(actor: dict) -> dict:
    """Per-reviewer R1/R2 counts plus every application with an open slot."""
    check_permission(actor, "diagnostics.view")

    r1 = _slot_counts(
        EligibilityResult.assigned_reviewer1_id,
        EligibilityResult.reviewer1_id,
        EligibilityResult.reviewer1_score,
    )
    r2 = _slot_counts(
        EligibilityResult.assigned_reviewer2_id,
        EligibilityResult.reviewer2_id,
        EligibilityResult.reviewer2_score,
    )

    reviewers = db.session.execute(
        select(User).where(User.role.in_(REVIEWER_ROLES)).order_by(User.id)
    ).scalars()
    stats = []
    for user in reviewers:
        entry = {
            "id": user.id,
            "name": user.full_name,
            "email": user.email,
            "role": user.role,
            "is_active": user.is_active,
            "r1": _slot_summary(r1, user.id),
            "r2": _slot_summary(r2, user.id),
        }
        entry["drift"] = entry["r1"]["drift"] or entry["r2"]["drift"]
        stats.append(entry)

    pending_stmt = (
        select(EligibilityResult, Application.status, Business.name)
        .join(Application, Application.id == EligibilityResult.application_id)
        .join(Business, Business.id == Application.business_id)
        .where(or_(
            and_(
                EligibilityResult.assigned_reviewer1_id.is_not(None),
                EligibilityResult.reviewer1_score.is_(None),
            ),
            and_(
                EligibilityResult.assigned_reviewer2_id.is_not(None),
                EligibilityResult.reviewer2_score.is_(None),
            ),
        ))
        .order_by(EligibilityResult.application_id)
    )
    pending = [
        {
            "application_id": result.application_id,
            "business_name": business_name,
            "status": status,
            "assigned_reviewer1_id": result.assigned_reviewer1_id,
            "reviewer1_scored": result.reviewer1_score is not None,
            "assigned_reviewer2_id": result.assigned_reviewer2_id,
            "reviewer2_scored": result.reviewer2_score is not None,
        }
        for result, status, business_name in db.session.execute(pending_stmt).all()
    ]

    return {
        "reviewers": stats,
        "pending_applications": pending,
        "drift_count": sum(1 for s in stats if s["drift"]),
    }


def _normalise_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _normalise_name(first: str | None, last: str | None) -> str:
    return re.sub(r"\s+", " ", f"{first or ''} {last or ''}").strip().lower()


def find_duplicate_reviewers(actor: dict) -> dict:
    """Staff users sharing a normalised email or full name."""
    check_permission(actor, "diagnostics.view")

    users = list(db.session.execute(
        select(User).where(User.role.in_(STAFF_ROLES)).order_by(User.id)
    ).scalars())

    by_email = defaultdict(list)
    by_name = defaultdict(list)
    for user in users:
        summary = {"id": user.id, "email": user.email, "name": user.full_name, "role": user.role}
        email_key = _normalise_email(user.email)
        name_key = _normalise_name(user.first_name, user.last_name)
        if email_key:
            by_email[email_key].append(summary)
        if name_key:
            by_name[name_key].append(summary)

    return {
        "by_email": [
            {"key": key, "users": group} for key, group in sorted(by_email.items()) if len(group) > 1
        ],
        "by_name": [
            {"key": key, "users": group} for key, group in sorted(by_name.items()) if len(group) > 1
        ],
    }
