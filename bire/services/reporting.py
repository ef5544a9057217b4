"""
Reporting read models.

    - get_qualified_applications: applications whose DD assessment was
      approved, with the names of everyone who reviewed them.
    - get_recipient_list: applicant contact list for outbound
      communication (delivery itself happens elsewhere).

Pure reads; nothing here mutates state.
"""

import logging

from sqlalchemy import select

from bire.models import db
from bire.models.application import Applicant, Application, Business
from bire.models.due_diligence import DueDiligenceRecord
from bire.models.user import User
from bire.services.permission import check_permission
from bire.utils.helpers import isoformat

logger = logging.getLogger(__name__)


def _user_names(ids) -> dict[str, str]:
    ids = {i for i in ids if i}
    if not ids:
        return {}
    stmt = select(User).where(User.id.in_(ids))
    return {u.id: u.full_name for u in db.session.execute(stmt).scalars()}


def get_qualified_applications(
    actor: dict,
    *,
    track: str | None = None,
    county: str | None = None,
    sector: str | None = None,
) -> list[dict]:
    """Applications with an approved DD record, highest DD score first."""
    check_permission(actor, "reporting.view")

    stmt = (
        select(DueDiligenceRecord, Application, Business, Applicant)
        .join(Application, Application.id == DueDiligenceRecord.application_id)
        .join(Business, Business.id == Application.business_id)
        .join(Applicant, Applicant.id == Business.applicant_id)
        .where(DueDiligenceRecord.dd_status == "approved")
    )
    if track:
        stmt = stmt.where(Application.track == track)
    if county:
        stmt = stmt.where(Business.county == county)
    if sector:
        stmt = stmt.where(Business.sector == sector)
    stmt = stmt.order_by(Application.id)

    rows = db.session.execute(stmt).all()
    user_ids = set()
    for record, application, _, _ in rows:
        result = application.eligibility_result
        if result is not None:
            user_ids.update((result.reviewer1_id, result.reviewer2_id))
        user_ids.update((record.primary_reviewer_id, record.validator_reviewer_id))
    names = _user_names(user_ids)

    qualified = []
    for record, application, business, applicant in rows:
        result = application.eligibility_result
        qualified.append({
            "application_id": application.id,
            "business_name": business.name,
            "applicant_name": applicant.full_name,
            "county": business.county,
            "sector": business.sector,
            "track": application.track,
            "aggregate_score": result.total_score if result else None,
            "dd_score": record.dd_score,
            "final_verdict": record.final_verdict,
            "completed_at": isoformat(record.validator_action_at or record.updated_at),
            "reviewer1_name": names.get(result.reviewer1_id) if result else None,
            "reviewer2_name": names.get(result.reviewer2_id) if result else None,
            "primary_reviewer_name": names.get(record.primary_reviewer_id),
            "validator_name": names.get(record.validator_reviewer_id),
        })

    qualified.sort(key=lambda q: (-(q["dd_score"] or 0), q["application_id"]))
    logger.info("Qualified applications listed", extra={"count": len(qualified)})
    return qualified


def get_recipient_list(
    actor: dict,
    *,
    status: str | None = None,
    qualified_only: bool = False,
) -> list[dict]:
    """One entry per applicant email, filtered by application status or DD approval."""
    check_permission(actor, "reporting.view")

    stmt = (
        select(Applicant, Application.id)
        .join(Business, Business.applicant_id == Applicant.id)
        .join(Application, Application.business_id == Business.id)
    )
    if status:
        stmt = stmt.where(Application.status == status)
    if qualified_only:
        stmt = stmt.join(
            DueDiligenceRecord, DueDiligenceRecord.application_id == Application.id,
        ).where(DueDiligenceRecord.dd_status == "approved")
    stmt = stmt.order_by(Applicant.id)

    recipients = []
    seen = set()
    for applicant, application_id in db.session.execute(stmt).all():
        key = (applicant.email or "").strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        recipients.append({
            "applicant_id": applicant.id,
            "application_id": application_id,
            "email": applicant.email,
            "name": applicant.full_name,
        })
    return recipients
