"""
Admin operations blueprint: health probe and scheduled jobs.

Endpoints:
    GET  /api/v1/health                     -- liveness + database check
    GET  /api/v1/admin/jobs                 -- registered jobs and last run
    POST /api/v1/admin/jobs/<name>/run      -- run a job now
"""

import logging
import time

from flask import Blueprint

from bire.middleware.jwt_auth import get_current_user
from bire.models import db
from bire.services.permission import check_permission
from bire.services.scheduler_service import SchedulerService, get_registered_jobs
from bire.utils.errors import E, api_error, api_ok

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")
jobs_bp = Blueprint("jobs", __name__, url_prefix="/api/v1/admin/jobs")


@health_bp.route("", methods=["GET"])
def health():
    """Liveness with a database round-trip."""
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
    except Exception as exc:
        logger.error("Health check: database failed: %s", exc)
        return {"status": "degraded", "database": "error"}, 503
    return {"status": "ok", "app": "BIRE Review Workflow", "database_ms": round(db_ms, 1)}, 200


@jobs_bp.route("", methods=["GET"])
def list_jobs():
    check_permission(get_current_user(), "jobs.manage")
    return api_ok("Scheduled jobs", jobs=SchedulerService.list_jobs())


@jobs_bp.route("/<job_name>/run", methods=["POST"])
def run_job(job_name):
    check_permission(get_current_user(), "jobs.manage")
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    result = SchedulerService.run_job(job_name)
    if result["status"] == "failed":
        return api_error(E.INTERNAL, f"Job {job_name} failed", details={"job": job_name})
    return api_ok(f"Job {job_name} {result['status']}", job=result)
