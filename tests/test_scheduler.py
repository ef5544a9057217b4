"""
Scheduler service tests.

Tests cover:
  - Job registry contents
  - ScheduledJob row creation (idempotent)
  - run_job: success, disabled (skipped), unknown, failing job
  - The ``flask run-job`` CLI command
"""

from datetime import timedelta

from bire.models import db
from bire.models.due_diligence import DueDiligenceRecord
from bire.models.scheduling import ScheduledJob
from bire.services import scheduler_service
from bire.services.scheduler_service import SchedulerService, get_registered_jobs
from bire.utils.helpers import utcnow


class TestRegistry:
    def test_builtin_jobs_registered(self):
        jobs = get_registered_jobs()
        assert "dd_deadline_sweep" in jobs
        assert "eligibility_reconcile" in jobs

    def test_rows_created_once(self):
        created = SchedulerService.ensure_jobs_registered()
        again = SchedulerService.ensure_jobs_registered()

        assert set(created) >= {"dd_deadline_sweep", "eligibility_reconcile"}
        assert again == []
        row = ScheduledJob.query.filter_by(job_name="dd_deadline_sweep").one()
        assert row.schedule_config["minute"] == "*/15"
        assert row.is_enabled is True


class TestRunJob:
    def test_deadline_sweep_job(self, make_user, make_application):
        make_user("oversight", id="ov-1")
        make_user("oversight", id="ov-2")
        application = make_application(status="approved")
        db.session.add(DueDiligenceRecord(
            application=application,
            dd_status="awaiting_approval",
            phase1_status="completed",
            phase1_score=70,
            validator_reviewer_id="ov-1",
            approval_deadline=utcnow() - timedelta(hours=1),
        ))
        db.session.commit()
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("dd_deadline_sweep")

        assert result["status"] == "success"
        assert result["result"]["reassigned"] == 1
        row = ScheduledJob.query.filter_by(job_name="dd_deadline_sweep").one()
        assert row.run_count == 1
        assert row.last_run_status == "success"

    def test_reconcile_job_runs_as_system(self):
        result = SchedulerService.run_job("eligibility_reconcile")
        assert result["status"] == "success"
        assert result["result"] == {"checked": 0, "updated": 0, "approved": 0}

    def test_disabled_job_skipped(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("dd_deadline_sweep", False)

        result = SchedulerService.run_job("dd_deadline_sweep")
        assert result["status"] == "skipped"

    def test_unknown_job(self):
        result = SchedulerService.run_job("nope")
        assert result["status"] == "error"

    def test_failing_job_recorded(self, monkeypatch):
        def boom(app):
            """Always fails."""
            raise RuntimeError("disk full")

        monkeypatch.setitem(scheduler_service._job_registry, "always_fails", boom)
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("always_fails")

        assert result["status"] == "failed"
        assert result["error"] == "disk full"
        row = ScheduledJob.query.filter_by(job_name="always_fails").one()
        assert row.error_count == 1
        assert row.last_error == "disk full"

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        names = {j["job_name"] for j in SchedulerService.list_jobs()}
        assert {"dd_deadline_sweep", "eligibility_reconcile"} <= names


class TestCli:
    def test_run_job_command(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["run-job", "eligibility_reconcile"])
        assert result.exit_code == 0
        assert "eligibility_reconcile: success" in result.output

    def test_unknown_job_exits_non_zero(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["run-job", "nope"])
        assert result.exit_code == 1
