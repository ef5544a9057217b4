"""
BIRE Review Workflow
Scheduler Service.

Lightweight job registry and runner.  There is no in-process timer: jobs
are triggered externally (cron calling ``flask run-job <name>``) or by an
admin through ``POST /api/v1/admin/jobs/<name>/run``.  Each run is
recorded on the job's ScheduledJob row.

Architecture:
    - register_job: decorator adding a function to the registry
    - SchedulerService: registration persistence and execution
    - Jobs receive the Flask app and run inside an app context
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context
from sqlalchemy import select

from bire.models import db
from bire.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}

DEFAULT_SCHEDULES = {
    "dd_deadline_sweep": {"minute": "*/15", "description": "Every 15 minutes"},
    "eligibility_reconcile": {"hour": "2", "minute": "0", "description": "Daily at 02:00"},
}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("dd_deadline_sweep")
        def sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


class SchedulerService:
    """Job registration, persistence and execution."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        # Importing the job module populates the registry
        import bire.services.scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        # Reuse the caller's context (request, CLI or test) so the job shares its session
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[str]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                if _job_record(name) is None:
                    db.session.add(ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_config=DEFAULT_SCHEDULES.get(name, {}),
                        is_enabled=True,
                    ))
                    created.append(name)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            record = _job_record(job_name)
            if record is not None and not record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "error": "Job is disabled"}

            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed", job_name)

            duration_ms = int((time.monotonic() - start) * 1000)
            record = _job_record(job_name)
            if record is not None:
                record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        logger.info(
            "Job %s finished: %s", job_name, status,
            extra={"event_type": "job.run", "count": duration_ms},
        )
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            record = _job_record(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        record = _job_record(job_name)
        if not record:
            return None
        record.is_enabled = enabled
        db.session.commit()
        return record.to_dict()
