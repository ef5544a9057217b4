"""
Application lifecycle service tests.

Tests cover:
  - Creation (draft / direct submit) and input validation
  - Submission with R1 auto-assignment
  - Gated transitions vs. the audited administrative override
  - Bulk transitions with per-item errors
  - List filters (observation-only)
"""

import pytest

from bire.core.exceptions import StateConflictError, ValidationError
from bire.models import db
from bire.models.application import APPLICATION_TRANSITIONS, Application, can_transition
from bire.models.audit import AuditLog
from bire.services import application_lifecycle as lifecycle
from bire.services.application_lifecycle import TransitionError
from bire.services.permission import PermissionDenied
from bire.services.reviewer_assignment import initialize_queue

BUSINESS = {"name": "Mama Mboga Produce", "county": "Kiambu", "sector": "Agribusiness"}
APPLICANT = {"first_name": "Wanjiru", "last_name": "Kamau", "email": "wanjiru@example.co.ke"}


class TestStatusTable:
    def test_terminal_statuses_have_no_edges(self):
        assert APPLICATION_TRANSITIONS["approved"] == []
        assert APPLICATION_TRANSITIONS["rejected"] == []

    @pytest.mark.parametrize("src,dst", [
        ("draft", "submitted"),
        ("submitted", "under_review"),
        ("under_review", "pending_senior_review"),
        ("pending_senior_review", "approved"),
        ("finalist", "rejected"),
    ])
    def test_valid_edges(self, src, dst):
        assert can_transition(src, dst)

    @pytest.mark.parametrize("src,dst", [
        ("draft", "approved"),
        ("approved", "rejected"),
        ("rejected", "submitted"),
        ("pending_senior_review", "draft"),
    ])
    def test_invalid_edges(self, src, dst):
        assert not can_transition(src, dst)


class TestCreateAndSubmit:
    def test_create_draft(self, make_user, actor):
        applicant = make_user("applicant")
        result = lifecycle.create_application(
            actor(applicant), business=BUSINESS, applicant=APPLICANT, track="foundation",
        )
        assert result["status"] == "draft"
        assert result["business"]["name"] == "Mama Mboga Produce"
        assert result["applicant"]["user_id"] == applicant.id
        assert result["submitted_at"] is None

    def test_missing_fields_rejected(self, make_user, actor):
        admin = make_user("admin")
        with pytest.raises(ValidationError) as exc:
            lifecycle.create_application(
                actor(admin), business={}, applicant={"first_name": "A"},
            )
        assert "business.name" in exc.value.details["missing"]
        assert "email" in exc.value.details["missing"]

    def test_invalid_track_rejected(self, make_user, actor):
        admin = make_user("admin")
        with pytest.raises(ValidationError):
            lifecycle.create_application(
                actor(admin), business=BUSINESS, applicant=APPLICANT, track="turbo",
            )

    def test_reviewer_cannot_create(self, make_user, actor):
        reviewer = make_user("reviewer_1")
        with pytest.raises(PermissionDenied):
            lifecycle.create_application(actor(reviewer), business=BUSINESS, applicant=APPLICANT)

    def test_submit_assigns_first_reviewer(self, make_user, actor):
        admin = make_user("admin", id="admin-1")
        make_user("reviewer_1", id="r1-b")
        make_user("reviewer_1", id="r1-a")
        initialize_queue(actor(admin))

        result = lifecycle.create_application(
            actor(admin), business=BUSINESS, applicant=APPLICANT, submit=True,
        )
        assert result["status"] == "submitted"
        assert result["submitted_at"] is not None
        assert result["assigned_reviewer1_id"] == "r1-a"

    def test_submit_without_reviewers_leaves_unassigned(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="draft")
        result = lifecycle.submit_application(application.id, actor(admin))
        assert result["status"] == "submitted"
        assert result["assigned_reviewer1_id"] is None

    def test_observation_only_never_assigned(self, make_user, make_application, actor):
        admin = make_user("admin")
        make_user("reviewer_1", id="r1-a")
        initialize_queue(actor(admin))
        application = make_application(status="draft", observation_only=True)

        result = lifecycle.submit_application(application.id, actor(admin))
        assert result["assigned_reviewer1_id"] is None

    def test_applicant_cannot_submit_someone_elses(self, make_user, make_application, actor):
        owner = make_user("applicant")
        other = make_user("applicant")
        application = make_application(status="draft", user_id=owner.id)
        with pytest.raises(PermissionDenied):
            lifecycle.submit_application(application.id, actor(other))

    def test_submit_twice_is_state_conflict(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="submitted")
        with pytest.raises(StateConflictError):
            lifecycle.submit_application(application.id, actor(admin))


class TestTransitions:
    def test_valid_transition(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="submitted")
        result = lifecycle.transition_application(application.id, "under_review", actor(admin))
        assert result["status"] == "under_review"

    def test_invalid_transition_raises(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="draft")
        with pytest.raises(TransitionError) as exc:
            lifecycle.transition_application(application.id, "approved", actor(admin))
        assert exc.value.current_status == "draft"
        assert db.session.get(Application, application.id).status == "draft"

    def test_transition_with_notes_is_audited(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="submitted")
        lifecycle.transition_application(
            application.id, "under_review", actor(admin), notes="Panel picked it up",
        )
        log = AuditLog.query.filter_by(action="application.transition").one()
        assert log.diff["notes"] == "Panel picked it up"

    def test_force_transition_bypasses_table_and_audits(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application(status="approved")
        result = lifecycle.force_transition(
            application.id, "rejected", actor(admin), notes="Fraud discovered",
        )
        assert result["status"] == "rejected"

        log = AuditLog.query.filter_by(action="application.force_transition").one()
        assert log.actor_user_id == admin.id
        assert log.diff["status"] == {"old": "approved", "new": "rejected"}
        assert log.diff["notes"] == "Fraud discovered"

    def test_force_transition_unknown_status(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application()
        with pytest.raises(ValidationError):
            lifecycle.force_transition(application.id, "limbo", actor(admin))

    def test_force_transition_requires_admin(self, make_user, make_application, actor):
        oversight = make_user("oversight")
        application = make_application()
        with pytest.raises(PermissionDenied):
            lifecycle.force_transition(application.id, "rejected", actor(oversight))

    def test_available_transitions(self, make_application):
        application = make_application(status="pending_senior_review")
        result = lifecycle.get_available_transitions(application.id)
        assert result["current_status"] == "pending_senior_review"
        assert set(result["available"]) == {"scoring_phase", "approved", "rejected"}


class TestBulkTransition:
    def test_per_item_errors_do_not_block_siblings(self, make_user, make_application, actor):
        admin = make_user("admin")
        first = make_application(status="submitted")
        second = make_application(status="under_review")

        result = lifecycle.bulk_transition(
            [first.id, 9999, "abc", second.id], "rejected", actor(admin), notes="Out of scope",
        )
        assert result["success"] == [first.id, second.id]
        assert result["success_count"] == 2
        assert result["error_count"] == 2
        assert db.session.get(Application, first.id).status == "rejected"

    def test_gated_bulk_reports_refused_edges(self, make_user, make_application, actor):
        admin = make_user("admin")
        ok = make_application(status="submitted")
        refused = make_application(status="draft")

        result = lifecycle.bulk_transition(
            [ok.id, refused.id], "under_review", actor(admin), force=False,
        )
        assert result["success"] == [ok.id]
        assert result["errors"][0]["id"] == refused.id
        assert db.session.get(Application, refused.id).status == "draft"

    def test_unknown_target_status(self, make_user, make_application, actor):
        admin = make_user("admin")
        application = make_application()
        with pytest.raises(ValidationError):
            lifecycle.bulk_transition([application.id], "limbo", actor(admin))


class TestListApplications:
    def test_observation_filter(self, make_user, make_application, actor):
        admin = make_user("admin")
        scored = make_application()
        observed = make_application(observation_only=True)

        all_ids = {a["id"] for a in lifecycle.list_applications(actor(admin))}
        obs_ids = {a["id"] for a in lifecycle.list_applications(actor(admin), observation_only=True)}
        scored_ids = {a["id"] for a in lifecycle.list_applications(actor(admin), observation_only=False)}

        assert all_ids == {scored.id, observed.id}
        assert obs_ids == {observed.id}
        assert scored_ids == {scored.id}

    def test_status_filter(self, make_user, make_application, actor):
        admin = make_user("admin")
        make_application(status="submitted")
        rejected = make_application(status="rejected")
        items = lifecycle.list_applications(actor(admin), status="rejected")
        assert [a["id"] for a in items] == [rejected.id]
