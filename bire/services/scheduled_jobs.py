"""
BIRE Review Workflow
Scheduled Jobs.

Jobs:
    - dd_deadline_sweep: reassigns DD approvals whose window has lapsed
    - eligibility_reconcile: recomputes aggregates and repairs drifted decisions
"""

from __future__ import annotations

import logging
from typing import Any

from bire.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

# Actor used when a job needs one: scheduler runs carry no user
SYSTEM_ACTOR = {"id": None, "role": "admin"}


@register_job("dd_deadline_sweep")
def dd_deadline_sweep(app) -> dict[str, Any]:
    """Reassign DD approvals past their approval deadline."""
    from bire.services.due_diligence import check_approval_deadlines

    result = check_approval_deadlines(actor=None)
    logger.info("dd_deadline_sweep: %s", result, extra={"count": result["reassigned"]})
    return result


@register_job("eligibility_reconcile")
def eligibility_reconcile(app) -> dict[str, Any]:
    """Recompute eligibility for fully scored applications."""
    from bire.services.review_scoring import reconcile_eligibility

    result = reconcile_eligibility(SYSTEM_ACTOR)
    logger.info("eligibility_reconcile: %s", result, extra={"count": result["approved"]})
    return result
