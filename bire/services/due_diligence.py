"""
Due-Diligence (DD) Workflow Service

Rubric scoring of qualifying applications by a primary DD reviewer, a
second-person validator approval gate with a fixed approval window, and
the deadline sweep that reassigns lapsed approvals.

Status flow (DD_TRANSITIONS):

    pending ──scores──▶ in_progress ──phase 1 complete──▶ awaiting_approval
                             ▲                                 │    │
                             │                        approved │    │ window lapses
                             └──────── queried ◀── queried ────┤    ▼
                                                               │  auto_reassigned
                                                               ▼    │
                                                           approved ◀┘

Rules enforced here:
    - Item scores are restricted to {0, 1, 3, 5}; criteria must exist in
      the phase rubric.
    - The first person to save scores becomes the primary reviewer; after
      that only the primary reviewer (or an admin) edits scores.
    - The validator is an active admin/oversight user and never the
      primary reviewer.
    - Only the assigned validator acts, and only while the record is
      ``awaiting_approval`` or ``auto_reassigned``.  The status is
      re-checked at write time with a conditional UPDATE.
    - ``approval_deadline`` is fixed once set and is only replaced by the
      sweep (auto-reassignment) or cleared by a query.
    - ``queried`` keeps every item score and reopens Phase 1.
    - A query always clears ``approval_deadline``, from ``auto_reassigned``
      as well as ``awaiting_approval``; resubmission opens a fresh window.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, select, update

from bire.core.exceptions import NotFoundError, StateConflictError, ValidationError
from bire.models import db
from bire.models.application import Application, Business
from bire.models.audit import write_audit
from bire.models.due_diligence import (
    DD_ITEM_SCORES,
    FINAL_VERDICTS,
    PHASE_CONFIGS,
    VALIDATOR_ACTIONABLE_STATUSES,
    VALIDATOR_ACTIONS,
    DueDiligenceItem,
    DueDiligenceRecord,
    phase_criteria,
    phase_max_score,
    validate_dd_transition,
)
from bire.models.user import ROLE_OVERSIGHT, VALIDATOR_ROLES, User
from bire.services.permission import PermissionDenied, check_permission, is_admin
from bire.services.reviewer_assignment import select_least_loaded
from bire.utils.helpers import as_utc, commit_or_raise, get_or_raise, utcnow

logger = logging.getLogger(__name__)

MIN_JUSTIFICATION_LENGTH = 20
MIN_VALIDATOR_COMMENT_LENGTH = 5
MIN_FINAL_REASON_LENGTH = 10

AUTO_REASSIGN_COMMENT = "Auto-reassigned after the approval window expired"


# ── Helpers ──────────────────────────────────────────────────────────────────


def _approval_window() -> timedelta:
    return timedelta(hours=current_app.config.get("APPROVAL_WINDOW_HOURS", 12))


def _record_or_raise(application_id: int) -> DueDiligenceRecord:
    record = db.session.execute(
        select(DueDiligenceRecord).where(DueDiligenceRecord.application_id == application_id)
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError(resource="DueDiligenceRecord", resource_id=application_id)
    return record


def _set_dd_status(record: DueDiligenceRecord, new_status: str) -> str:
    old = record.dd_status
    if old == new_status:
        return old
    if not validate_dd_transition(old, new_status):
        raise StateConflictError(
            f"Due diligence cannot move from '{old}' to '{new_status}'", old,
        )
    record.dd_status = new_status
    return old


def _aggregate_score(record: DueDiligenceRecord):
    result = record.application.eligibility_result if record.application else None
    return result.total_score if result else None


def compute_dd_disparity(aggregate, dd_score) -> float | None:
    """|aggregate review score − DD score|, or None while either is missing."""
    if aggregate is None or dd_score is None:
        return None
    return abs(aggregate - dd_score)


def _enter_awaiting_approval(record: DueDiligenceRecord, now) -> None:
    _set_dd_status(record, "awaiting_approval")
    record.approval_deadline = now + _approval_window()
    record.validator_action = None
    record.validator_action_at = None


def _request_approval(record: DueDiligenceRecord, now) -> None:
    """Phase 1 is complete: stamp the primary review and open the approval window."""
    record.primary_reviewed_at = now
    record.score_disparity = compute_dd_disparity(_aggregate_score(record), record.dd_score)
    if record.validator_reviewer_id:
        _enter_awaiting_approval(record, now)
        logger.info(
            "DD approval requested for application %s", record.application_id,
            extra={
                "application_id": record.application_id,
                "validator_id": record.validator_reviewer_id,
                "dd_status": record.dd_status,
                "event_type": "dd.approval_requested",
            },
        )


def _phase_items(record: DueDiligenceRecord, phase: int) -> dict[str, DueDiligenceItem]:
    return {i.criterion_name: i for i in record.items if i.phase == phase}


def _phase_complete(record: DueDiligenceRecord, phase: int) -> bool:
    items = _phase_items(record, phase)
    return all(
        items.get(name) is not None and items[name].score is not None
        for name in phase_criteria(phase)
    )


def _validator_loads(candidates: list[str]) -> dict[str, int]:
    """Open validation work per user, counted from DD rows."""
    loads = dict.fromkeys(candidates, 0)
    if not candidates:
        return loads
    stmt = (
        select(DueDiligenceRecord.validator_reviewer_id, func.count(DueDiligenceRecord.id))
        .where(
            DueDiligenceRecord.validator_reviewer_id.in_(candidates),
            DueDiligenceRecord.dd_status.in_(VALIDATOR_ACTIONABLE_STATUSES),
        )
        .group_by(DueDiligenceRecord.validator_reviewer_id)
    )
    for rid, n in db.session.execute(stmt).all():
        loads[rid] = n
    return loads


# ═════════════════════════════════════════════════════════════════════════════
# Entry into DD
# ═════════════════════════════════════════════════════════════════════════════


def ensure_dd_record(application: Application) -> DueDiligenceRecord:
    """Return the application's DD record, creating a ``pending`` one (no commit)."""
    record = application.due_diligence
    if record is not None:
        return record
    record = DueDiligenceRecord(application=application, dd_status="pending")
    db.session.add(record)
    db.session.flush()
    logger.info(
        "DD record opened for application %s", application.id,
        extra={"application_id": application.id, "dd_status": "pending", "event_type": "dd.create"},
    )
    return record


def recommend_for_due_diligence(application_id: int, actor: dict, justification: str) -> dict:
    """Oversight path: send an application to DD regardless of its aggregate."""
    check_permission(actor, "dd.recommend")
    justification = (justification or "").strip()
    if len(justification) < MIN_JUSTIFICATION_LENGTH:
        raise ValidationError(
            f"Justification must be at least {MIN_JUSTIFICATION_LENGTH} characters",
        )

    application = get_or_raise(Application, application_id, "Application")
    result = application.eligibility_result
    if result is None or not result.is_final:
        raise StateConflictError("Both reviews must be completed first", application.status)

    record = ensure_dd_record(application)
    if record.dd_status == "approved":
        raise StateConflictError("Due diligence is already approved", record.dd_status)

    record.is_oversight_initiated = True
    record.oversight_justification = justification
    record.oversight_admin_id = actor["id"]
    record.oversight_flagged_at = utcnow()
    write_audit(
        entity_type="due_diligence",
        entity_id=record.id,
        action="dd.oversight_recommend",
        actor_user_id=actor["id"],
        diff={"justification": justification},
    )
    commit_or_raise("DueDiligenceRecord")

    logger.info(
        "Application %s recommended for DD by oversight", application.id,
        extra={"application_id": application.id, "user_id": actor["id"], "event_type": "dd.recommend"},
    )
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Scoring
# ═════════════════════════════════════════════════════════════════════════════


def _validate_items(phase: int, items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("At least one rubric item is required")

    criteria = phase_criteria(phase)
    errors = []
    cleaned = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append({"index": idx, "error": "Item must be an object"})
            continue
        name = item.get("criterion_name")
        score = item.get("score")
        if not isinstance(name, str) or name not in criteria:
            errors.append({"index": idx, "error": f"Unknown criterion '{name}' for phase {phase}"})
            continue
        if score is not None and (
            isinstance(score, bool)
            or not isinstance(score, (int, float))
            or score not in DD_ITEM_SCORES
        ):
            errors.append({
                "index": idx,
                "error": f"Score for '{name}' must be one of {sorted(DD_ITEM_SCORES)}",
            })
            continue
        cleaned.append({
            "criterion_name": name,
            "category": criteria[name],
            "score": int(score) if score is not None else None,
            "comments": item.get("comments"),
        })
    if errors:
        raise ValidationError("Invalid rubric items", details={"errors": errors})
    return cleaned


def save_dd_scores(
    application_id: int,
    actor: dict,
    phase: int,
    items: list,
    notes: str | None = None,
) -> dict:
    """Upsert rubric scores for one phase and recompute the phase total.

    Completing every Phase 1 criterion fires the approval request.
    Scores cannot change while a validator decision is pending, and
    Phase 1 is frozen once DD is approved.
    """
    check_permission(actor, "dd.score")
    if phase not in PHASE_CONFIGS:
        raise ValidationError("Phase must be 1 or 2", details={"phase": phase})
    cleaned = _validate_items(phase, items)

    record = _record_or_raise(application_id)
    if record.dd_status in VALIDATOR_ACTIONABLE_STATUSES:
        raise StateConflictError("Scores are frozen while awaiting validator approval", record.dd_status)
    if phase == 1 and record.dd_status == "approved":
        raise StateConflictError("Phase 1 is approved and can no longer change", record.dd_status)
    if phase == 2 and record.phase1_status != "completed":
        raise StateConflictError("Phase 1 must be completed before the site visit", record.dd_status)

    if record.primary_reviewer_id is None:
        if actor["id"] == record.validator_reviewer_id:
            raise PermissionDenied(actor["id"], "dd.score", "the validator cannot be the primary reviewer")
        record.primary_reviewer_id = actor["id"]
    elif record.primary_reviewer_id != actor["id"] and not is_admin(actor):
        raise PermissionDenied(actor["id"], "dd.score", "only the primary reviewer may edit scores")

    existing = _phase_items(record, phase)
    for entry in cleaned:
        item = existing.get(entry["criterion_name"])
        if item is None:
            item = DueDiligenceItem(
                phase=phase,
                category=entry["category"],
                criterion_name=entry["criterion_name"],
            )
            record.items.append(item)
            existing[entry["criterion_name"]] = item
        item.score = entry["score"]
        item.comments = entry["comments"]

    total = sum(i.score for i in existing.values() if i.score is not None)
    complete = _phase_complete(record, phase)
    was_complete = getattr(record, f"phase{phase}_status") == "completed"
    setattr(record, f"phase{phase}_score", total)
    setattr(record, f"phase{phase}_status", "completed" if complete else "in_progress")
    if notes is not None:
        setattr(record, f"phase{phase}_notes", notes)

    if record.dd_status in ("pending", "queried"):
        _set_dd_status(record, "in_progress")

    now = utcnow()
    if phase == 1 and complete and not was_complete and record.dd_status == "in_progress":
        _request_approval(record, now)
    elif phase == 2 and record.primary_reviewed_at is not None:
        record.score_disparity = compute_dd_disparity(_aggregate_score(record), record.dd_score)

    commit_or_raise("DueDiligenceRecord")

    logger.info(
        "DD phase %d scores saved for application %s: %d/%d",
        phase, application_id, total, phase_max_score(phase),
        extra={
            "application_id": application_id, "user_id": actor["id"],
            "dd_status": record.dd_status, "event_type": "dd.score",
        },
    )
    return record.to_dict(include_items=True)


def submit_primary_review(application_id: int, actor: dict) -> dict:
    """Explicitly (re-)request validator approval, e.g. after a query."""
    check_permission(actor, "dd.score")
    record = _record_or_raise(application_id)
    if record.primary_reviewer_id not in (None, actor["id"]) and not is_admin(actor):
        raise PermissionDenied(actor["id"], "dd.score", "only the primary reviewer may submit")
    if record.dd_status not in ("in_progress", "queried"):
        raise StateConflictError(
            f"Primary review cannot be submitted while DD is '{record.dd_status}'",
            record.dd_status,
        )
    if not _phase_complete(record, 1):
        raise ValidationError("Every Phase 1 criterion must be scored before submission")

    record.phase1_status = "completed"
    if record.primary_reviewer_id is None:
        record.primary_reviewer_id = actor["id"]
    if record.dd_status == "queried" and not record.validator_reviewer_id:
        _set_dd_status(record, "in_progress")
    _request_approval(record, utcnow())
    commit_or_raise("DueDiligenceRecord")
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Validator gate
# ═════════════════════════════════════════════════════════════════════════════


def get_available_validators(application_id: int, actor: dict) -> list[dict]:
    """Active admin/oversight users other than the record's primary reviewer."""
    check_permission(actor, "dd.view")
    record = _record_or_raise(application_id)
    stmt = select(User).where(User.role.in_(VALIDATOR_ROLES), User.is_active.is_(True))
    if record.primary_reviewer_id:
        stmt = stmt.where(User.id != record.primary_reviewer_id)
    stmt = stmt.order_by(User.last_name, User.first_name)
    return [
        {"id": u.id, "name": u.full_name, "email": u.email, "role": u.role}
        for u in db.session.execute(stmt).scalars()
    ]


def select_validator(application_id: int, actor: dict, validator_id: str) -> dict:
    """Name the validator; opens the approval window if Phase 1 is already done."""
    check_permission(actor, "dd.select_validator")
    record = _record_or_raise(application_id)
    if record.dd_status == "approved" or record.dd_status in VALIDATOR_ACTIONABLE_STATUSES:
        raise StateConflictError(
            f"Validator cannot be changed while DD is '{record.dd_status}'", record.dd_status,
        )

    validator = db.session.get(User, validator_id) if validator_id else None
    if validator is None or not validator.is_active or validator.role not in VALIDATOR_ROLES:
        raise ValidationError(
            "Validator must be an active admin or oversight user",
            details={"validator_id": validator_id},
        )
    if validator.id == record.primary_reviewer_id:
        raise ValidationError("Validator must be different from the primary reviewer")

    old = record.validator_reviewer_id
    record.validator_reviewer_id = validator.id
    write_audit(
        entity_type="due_diligence",
        entity_id=record.id,
        action="dd.validator_selected",
        actor_user_id=actor["id"],
        diff={"validator_reviewer_id": {"old": old, "new": validator.id}},
    )

    if record.primary_reviewed_at is not None and record.phase1_status == "completed":
        if record.dd_status == "queried":
            _set_dd_status(record, "in_progress")
        _enter_awaiting_approval(record, utcnow())

    commit_or_raise("DueDiligenceRecord")

    logger.info(
        "Validator selected for application %s", application_id,
        extra={
            "application_id": application_id, "validator_id": validator.id,
            "dd_status": record.dd_status, "event_type": "dd.validator_selected",
        },
    )
    return record.to_dict()


def submit_validator_action(application_id: int, actor: dict, action: str, comments: str) -> dict:
    """Approve or query a DD assessment as the assigned validator.

    The write is conditional on the status still being actionable and the
    actor still being the validator, so an approval racing the deadline
    sweep either wins cleanly or fails with a conflict.
    """
    check_permission(actor, "dd.validate")
    if action not in VALIDATOR_ACTIONS:
        raise ValidationError(
            f"Invalid validator action '{action}'",
            details={"valid_actions": sorted(VALIDATOR_ACTIONS)},
        )
    comments = (comments or "").strip()
    if len(comments) < MIN_VALIDATOR_COMMENT_LENGTH:
        raise ValidationError(
            f"Comments must be at least {MIN_VALIDATOR_COMMENT_LENGTH} characters",
        )

    record = _record_or_raise(application_id)
    if record.validator_reviewer_id != actor["id"]:
        raise PermissionDenied(actor["id"], "dd.validate", "only the assigned validator can take this action")
    if record.dd_status not in VALIDATOR_ACTIONABLE_STATUSES:
        raise StateConflictError(
            f"Validator action is not possible while DD is '{record.dd_status}'",
            record.dd_status,
        )

    old_status = record.dd_status
    values = {
        DueDiligenceRecord.dd_status: action,
        DueDiligenceRecord.validator_action: action,
        DueDiligenceRecord.validator_comments: comments,
        DueDiligenceRecord.validator_action_at: utcnow(),
        DueDiligenceRecord.updated_at: utcnow(),
    }
    if action == "queried":
        values[DueDiligenceRecord.approval_deadline] = None
        values[DueDiligenceRecord.phase1_status] = "in_progress"

    stmt = (
        update(DueDiligenceRecord)
        .where(
            DueDiligenceRecord.id == record.id,
            DueDiligenceRecord.dd_status.in_(VALIDATOR_ACTIONABLE_STATUSES),
            DueDiligenceRecord.validator_reviewer_id == actor["id"],
        )
        .values(values)
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        db.session.rollback()
        raise StateConflictError("Due diligence record changed before the action was recorded")
    db.session.expire(record)

    write_audit(
        entity_type="due_diligence",
        entity_id=record.id,
        action="dd.validator_action",
        actor_user_id=actor["id"],
        diff={"dd_status": {"old": old_status, "new": action}, "comments": comments},
    )
    commit_or_raise("DueDiligenceRecord")

    logger.info(
        "Validator %s DD for application %s", action, application_id,
        extra={
            "application_id": application_id, "validator_id": actor["id"],
            "dd_status": action, "event_type": "dd.validator_action",
        },
    )
    return record.to_dict()


def record_final_decision(application_id: int, actor: dict, verdict: str, reason: str) -> dict:
    """Store the pass/fail verdict of the DD assessment."""
    check_permission(actor, "dd.final_decision")
    if verdict not in FINAL_VERDICTS:
        raise ValidationError(
            f"Invalid verdict '{verdict}'", details={"valid_verdicts": sorted(FINAL_VERDICTS)},
        )
    reason = (reason or "").strip()
    if len(reason) < MIN_FINAL_REASON_LENGTH:
        raise ValidationError(
            f"Please provide a detailed reason (at least {MIN_FINAL_REASON_LENGTH} characters)",
        )

    record = _record_or_raise(application_id)
    record.final_verdict = verdict
    record.final_reason = reason
    record.final_decision_by = actor["id"]
    record.final_decision_at = utcnow()
    write_audit(
        entity_type="due_diligence",
        entity_id=record.id,
        action="dd.final_decision",
        actor_user_id=actor["id"],
        diff={"verdict": verdict, "reason": reason},
    )
    commit_or_raise("DueDiligenceRecord")
    return record.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Deadline sweep
# ═════════════════════════════════════════════════════════════════════════════


def check_approval_deadlines(actor: dict | None = None, now=None) -> dict:
    """Reassign every ``awaiting_approval`` record whose window has lapsed.

    Runs from the scheduler (``actor=None``) or on demand by an admin.
    Each record is moved with a conditional UPDATE, so a validator action
    that lands first wins and the record is simply not counted.  Records
    with no eligible oversight user are left for the next sweep.

    Returns:
        {"reassigned": int, "skipped": int, "records": [{application_id, ...}]}
    """
    if actor is not None:
        check_permission(actor, "dd.check_deadlines")
    now = as_utc(now) or utcnow()

    expired = list(db.session.execute(
        select(DueDiligenceRecord)
        .where(
            DueDiligenceRecord.dd_status == "awaiting_approval",
            DueDiligenceRecord.approval_deadline.is_not(None),
            DueDiligenceRecord.approval_deadline < now,
        )
        .order_by(DueDiligenceRecord.approval_deadline, DueDiligenceRecord.id)
    ).scalars())

    oversight_ids = list(db.session.execute(
        select(User.id).where(User.role == ROLE_OVERSIGHT, User.is_active.is_(True))
    ).scalars())
    loads = _validator_loads(oversight_ids)

    reassigned = []
    skipped = 0
    for record in expired:
        old_validator = record.validator_reviewer_id
        new_validator = select_least_loaded(
            loads, exclude={old_validator, record.primary_reviewer_id},
        )
        if new_validator is None:
            skipped += 1
            logger.warning(
                "No oversight user available to reassign DD for application %s",
                record.application_id,
                extra={"application_id": record.application_id, "event_type": "dd.auto_reassign"},
            )
            continue

        stmt = (
            update(DueDiligenceRecord)
            .where(
                DueDiligenceRecord.id == record.id,
                DueDiligenceRecord.dd_status == "awaiting_approval",
                DueDiligenceRecord.approval_deadline < now,
            )
            .values({
                DueDiligenceRecord.dd_status: "auto_reassigned",
                DueDiligenceRecord.previous_validator_id: old_validator,
                DueDiligenceRecord.validator_reviewer_id: new_validator,
                DueDiligenceRecord.validator_action: None,
                DueDiligenceRecord.validator_comments: AUTO_REASSIGN_COMMENT,
                DueDiligenceRecord.approval_deadline: now + _approval_window(),
                DueDiligenceRecord.reassignment_count: DueDiligenceRecord.reassignment_count + 1,
                DueDiligenceRecord.updated_at: now,
            })
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount != 1:
            skipped += 1
            continue
        db.session.expire(record)

        loads[new_validator] += 1
        if old_validator in loads:
            loads[old_validator] -= 1
        write_audit(
            entity_type="due_diligence",
            entity_id=record.id,
            action="dd.auto_reassign",
            actor_user_id=actor["id"] if actor else None,
            diff={"validator_reviewer_id": {"old": old_validator, "new": new_validator}},
        )
        reassigned.append({
            "application_id": record.application_id,
            "previous_validator_id": old_validator,
            "validator_reviewer_id": new_validator,
        })
        logger.info(
            "DD approval for application %s reassigned", record.application_id,
            extra={
                "application_id": record.application_id, "validator_id": new_validator,
                "dd_status": "auto_reassigned", "event_type": "dd.auto_reassign",
            },
        )

    commit_or_raise("DueDiligenceRecord")

    logger.info(
        "Approval deadline sweep: %d reassigned, %d skipped", len(reassigned), skipped,
        extra={"count": len(reassigned), "event_type": "dd.deadline_sweep"},
    )
    return {"reassigned": len(reassigned), "skipped": skipped, "records": reassigned}


# ═════════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════════


def get_dd_queue(actor: dict, *, status: str | None = None, oversight_only: bool = False) -> list[dict]:
    """DD records with business name and aggregate score, oldest first."""
    check_permission(actor, "dd.view")
    stmt = (
        select(DueDiligenceRecord, Business.name)
        .join(Application, Application.id == DueDiligenceRecord.application_id)
        .join(Business, Business.id == Application.business_id)
    )
    if status:
        stmt = stmt.where(DueDiligenceRecord.dd_status == status)
    if oversight_only:
        stmt = stmt.where(DueDiligenceRecord.is_oversight_initiated.is_(True))
    stmt = stmt.order_by(DueDiligenceRecord.created_at, DueDiligenceRecord.id)

    queue = []
    for record, business_name in db.session.execute(stmt).all():
        queue.append({
            "id": record.id,
            "application_id": record.application_id,
            "business_name": business_name,
            "aggregate_score": _aggregate_score(record),
            "dd_score": record.dd_score,
            "dd_status": record.dd_status,
            "is_oversight_initiated": record.is_oversight_initiated,
            "score_disparity": record.score_disparity,
            "primary_reviewer_id": record.primary_reviewer_id,
            "validator_reviewer_id": record.validator_reviewer_id,
            "approval_deadline": record.to_dict()["approval_deadline"],
        })
    return queue


def get_dd_record(application_id: int, actor: dict) -> dict:
    check_permission(actor, "dd.view")
    record = _record_or_raise(application_id)
    data = record.to_dict(include_items=True)
    data["aggregate_score"] = _aggregate_score(record)
    data["rubric"] = {
        str(phase): {"name": cfg["name"], "categories": cfg["categories"], "max_score": phase_max_score(phase)}
        for phase, cfg in PHASE_CONFIGS.items()
    }
    return data
