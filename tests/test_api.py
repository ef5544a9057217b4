"""
HTTP API tests.

Exercises the blueprints end to end through the Flask test client:
identity resolution, the standard failure result for every error class,
and the main review → due-diligence path.
"""

import pytest

from bire.core.exceptions import ConflictError
from bire.models import db
from bire.models.due_diligence import phase_criteria, phase_max_score
from bire.models.review import ReviewerQueueEntry
from bire.services import reporting
from bire.utils.helpers import commit_or_raise

API = "/api/v1"


@pytest.fixture()
def admin(make_user):
    return make_user("admin", id="admin-1")


def _create(client, headers, **extra):
    body = {
        "business": {"name": "Jua Kali Works", "county": "Nakuru", "sector": "Manufacturing"},
        "applicant": {"first_name": "Kip", "last_name": "Rotich", "email": "kip@example.co.ke"},
        "track": "acceleration",
    }
    body.update(extra)
    res = client.post(f"{API}/applications", json=body, headers=headers)
    assert res.status_code == 201
    return res.get_json()["application"]


class TestHealth:
    def test_health_needs_no_token(self, client):
        res = client.get(f"{API}/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"


class TestIdentity:
    def test_missing_token_is_401(self, client):
        res = client.get(f"{API}/applications")
        assert res.status_code == 401
        body = res.get_json()
        assert body["success"] is False
        assert body["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token_is_401(self, client):
        res = client.get(f"{API}/applications", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_inactive_user_is_401(self, client, make_user, auth_headers):
        gone = make_user("admin", is_active=False)
        res = client.get(f"{API}/applications", headers=auth_headers(gone))
        assert res.status_code == 401

    def test_role_is_read_from_user_row(self, client, make_user, auth_headers):
        demoted = make_user("reviewer_1")
        headers = {"Authorization": auth_headers(demoted)["Authorization"]}
        demoted.role = "applicant"
        db.session.commit()
        res = client.get(f"{API}/applications", headers=headers)
        assert res.status_code == 403


class TestErrorResults:
    def test_forbidden_is_403(self, client, make_user, auth_headers):
        reviewer = make_user("reviewer_1")
        res = client.post(f"{API}/assignments/bulk", json={"role": "reviewer_1"}, headers=auth_headers(reviewer))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_not_found_is_404(self, client, admin, auth_headers):
        res = client.get(f"{API}/applications/9999", headers=auth_headers(admin))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unknown_route_is_404(self, client, admin, auth_headers):
        res = client.get(f"{API}/nowhere", headers=auth_headers(admin))
        assert res.status_code == 404
        assert res.get_json()["success"] is False

    def test_validation_is_400(self, client, admin, auth_headers, make_application):
        application = make_application()
        res = client.post(
            f"{API}/applications/{application.id}/reviews",
            json={"reviewer_role": "reviewer_1"},
            headers=auth_headers(admin),
        )
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"]["missing"] == ["score"]

    def test_state_conflict_is_409(self, client, admin, auth_headers, make_application):
        application = make_application(status="draft")
        res = client.post(
            f"{API}/applications/{application.id}/transition",
            json={"to_status": "approved"},
            headers=auth_headers(admin),
        )
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == "draft"

    def test_unexpected_error_is_500_without_detail(self, client, admin, auth_headers, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("connection string leaked")

        monkeypatch.setattr(reporting, "get_qualified_applications", boom)
        res = client.get(f"{API}/reports/qualified", headers=auth_headers(admin))

        assert res.status_code == 500
        body = res.get_json()
        assert body == {"success": False, "error": "Internal server error", "code": "ERR_INTERNAL"}

    def test_duplicate_commit_is_conflict(self, make_user):
        reviewer = make_user("reviewer_1")
        db.session.add(ReviewerQueueEntry(reviewer_id=reviewer.id, reviewer_role="reviewer_1"))
        db.session.add(ReviewerQueueEntry(reviewer_id=reviewer.id, reviewer_role="reviewer_1"))
        with pytest.raises(ConflictError):
            commit_or_raise("ReviewerQueueEntry")


class TestApplicationsApi:
    def test_create_and_submit(self, client, make_user, auth_headers):
        applicant = make_user("applicant")
        created = _create(client, auth_headers(applicant))
        assert created["status"] == "draft"

        res = client.post(f"{API}/applications/{created['id']}/submit", headers=auth_headers(applicant))
        assert res.status_code == 200
        assert res.get_json()["application"]["status"] == "submitted"

    def test_list_and_transitions(self, client, admin, auth_headers):
        created = _create(client, auth_headers(admin), submit=True)

        listed = client.get(f"{API}/applications?status=submitted", headers=auth_headers(admin)).get_json()
        assert listed["total"] == 1

        res = client.get(f"{API}/applications/{created['id']}/transitions", headers=auth_headers(admin))
        assert "under_review" in res.get_json()["available"]

    def test_force_transition(self, client, admin, auth_headers):
        created = _create(client, auth_headers(admin))
        res = client.post(
            f"{API}/applications/{created['id']}/force-transition",
            json={"to_status": "rejected", "notes": "Duplicate submission"},
            headers=auth_headers(admin),
        )
        assert res.status_code == 200
        assert res.get_json()["application"]["status"] == "rejected"

    def test_bulk_transition(self, client, admin, auth_headers):
        first = _create(client, auth_headers(admin), submit=True)
        res = client.post(
            f"{API}/applications/bulk-transition",
            json={"application_ids": [first["id"], 424242], "to_status": "rejected"},
            headers=auth_headers(admin),
        )
        assert res.status_code == 200
        results = res.get_json()["results"]
        assert results["success_count"] == 1
        assert results["error_count"] == 1


class TestReviewFlowApi:
    def test_blind_review_through_to_dd(self, client, make_user, auth_headers, admin):
        r1 = make_user("reviewer_1", id="r1-a")
        r2 = make_user("reviewer_2", id="r2-a")
        tech = make_user("technical_reviewer", id="tech-1")
        ov = make_user("oversight", id="ov-1")
        assert client.post(f"{API}/assignments/queue/initialize", headers=auth_headers(admin)).status_code == 200

        created = _create(client, auth_headers(admin), submit=True)
        app_id = created["id"]
        assert created["assigned_reviewer1_id"] == "r1-a"

        mine = client.get(f"{API}/assignments/mine", headers=auth_headers(r1)).get_json()
        assert mine["total"] == 1

        res = client.post(
            f"{API}/applications/{app_id}/reviews",
            json={"reviewer_role": "reviewer_1", "score": 72, "notes": "Clear plan"},
            headers=auth_headers(r1),
        )
        assert res.status_code == 201
        assert res.get_json()["review"]["assigned_reviewer2_id"] == "r2-a"

        blind = client.get(f"{API}/applications/{app_id}/reviews", headers=auth_headers(r2)).get_json()["review"]
        assert blind["reviewer_1"]["label"] == "Reviewer 1 (Blind)"
        assert blind["reviewer_1"]["score"] is None

        res = client.post(
            f"{API}/applications/{app_id}/reviews",
            json={"reviewer_role": "reviewer_2", "score": 78},
            headers=auth_headers(r2),
        )
        review = res.get_json()["review"]
        assert review["status"] == "approved"
        assert review["due_diligence_created"] is True

        items = [{"criterion_name": name, "score": 5} for name in phase_criteria(1)]
        res = client.put(
            f"{API}/applications/{app_id}/due-diligence/phases/1",
            json={"items": items}, headers=auth_headers(tech),
        )
        assert res.status_code == 200
        assert res.get_json()["record"]["phase1_score"] == phase_max_score(1)

        res = client.post(
            f"{API}/applications/{app_id}/due-diligence/validator",
            json={"validator_id": "ov-1"}, headers=auth_headers(tech),
        )
        assert res.get_json()["record"]["dd_status"] == "awaiting_approval"

        res = client.post(
            f"{API}/applications/{app_id}/due-diligence/validator-action",
            json={"action": "approved", "comments": "Documents verified"},
            headers=auth_headers(ov),
        )
        assert res.status_code == 200
        assert res.get_json()["message"] == "Due diligence approved"

        qualified = client.get(f"{API}/reports/qualified", headers=auth_headers(ov)).get_json()
        assert [q["application_id"] for q in qualified["items"]] == [app_id]

    def test_lock_endpoint(self, client, admin, auth_headers, make_application):
        application = make_application(status="approved")
        res = client.post(
            f"{API}/applications/{application.id}/lock",
            json={"reason": "Board sign-off"}, headers=auth_headers(admin),
        )
        assert res.status_code == 200
        assert res.get_json()["result"]["is_locked"] is True


class TestAdminApi:
    def test_jobs_list_and_run(self, client, admin, auth_headers):
        res = client.get(f"{API}/admin/jobs", headers=auth_headers(admin))
        assert res.status_code == 200
        assert {j["job_name"] for j in res.get_json()["jobs"]} >= {"dd_deadline_sweep"}

        res = client.post(f"{API}/admin/jobs/dd_deadline_sweep/run", headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["job"]["status"] == "success"

    def test_unknown_job_is_404(self, client, admin, auth_headers):
        res = client.post(f"{API}/admin/jobs/nope/run", headers=auth_headers(admin))
        assert res.status_code == 404

    def test_jobs_are_admin_only(self, client, make_user, auth_headers):
        oversight = make_user("oversight")
        res = client.get(f"{API}/admin/jobs", headers=auth_headers(oversight))
        assert res.status_code == 403

    def test_diagnostics_endpoint(self, client, admin, auth_headers):
        res = client.get(f"{API}/diagnostics/reviewers", headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["drift_count"] == 0
