"""
Reporting read-model tests: qualified applications and recipient lists.
"""

import pytest

from bire.models import db
from bire.models.due_diligence import DueDiligenceRecord
from bire.models.review import EligibilityResult
from bire.services import reporting
from bire.services.permission import PermissionDenied


def _qualify(application, *, phase1, dd_status="approved", r1=None, r2=None, primary=None, validator=None):
    db.session.add(EligibilityResult(
        application=application,
        reviewer1_id=r1, reviewer1_score=70,
        reviewer2_id=r2, reviewer2_score=80,
        total_score=75, is_eligible=True,
    ))
    db.session.add(DueDiligenceRecord(
        application=application,
        dd_status=dd_status,
        phase1_score=phase1,
        phase1_status="completed",
        primary_reviewer_id=primary,
        validator_reviewer_id=validator,
    ))
    db.session.commit()


class TestQualifiedApplications:
    def test_only_approved_dd_sorted_by_dd_score(self, make_user, make_application, actor):
        admin = make_user("admin")
        low = make_application(status="approved", name="Low DD")
        high = make_application(status="approved", name="High DD")
        waiting = make_application(status="approved", name="Still Waiting")
        _qualify(low, phase1=62)
        _qualify(high, phase1=88)
        _qualify(waiting, phase1=95, dd_status="awaiting_approval")

        items = reporting.get_qualified_applications(actor(admin))

        assert [q["business_name"] for q in items] == ["High DD", "Low DD"]
        assert items[0]["dd_score"] == 88
        assert items[0]["aggregate_score"] == 75

    def test_reviewer_names_included(self, make_user, make_application, actor):
        admin = make_user("admin")
        r1 = make_user("reviewer_1", first_name="Otieno", last_name="Ouma")
        r2 = make_user("reviewer_2", first_name="Njeri", last_name="Mwangi")
        tech = make_user("technical_reviewer", first_name="Baraka", last_name="Kip")
        ov = make_user("oversight", first_name="Achieng", last_name="Odhiambo")
        application = make_application(status="approved")
        _qualify(application, phase1=70, r1=r1.id, r2=r2.id, primary=tech.id, validator=ov.id)

        item = reporting.get_qualified_applications(actor(admin))[0]
        assert item["reviewer1_name"] == "Otieno Ouma"
        assert item["reviewer2_name"] == "Njeri Mwangi"
        assert item["primary_reviewer_name"] == "Baraka Kip"
        assert item["validator_name"] == "Achieng Odhiambo"

    def test_filters(self, make_user, make_application, actor):
        admin = make_user("admin")
        nairobi = make_application(status="approved", county="Nairobi", track="foundation")
        kisumu = make_application(
            status="approved", county="Kisumu", track="acceleration", sector="Manufacturing",
        )
        _qualify(nairobi, phase1=70)
        _qualify(kisumu, phase1=70)

        by_county = reporting.get_qualified_applications(actor(admin), county="Kisumu")
        by_track = reporting.get_qualified_applications(actor(admin), track="foundation")
        by_sector = reporting.get_qualified_applications(actor(admin), sector="Manufacturing")

        assert [q["application_id"] for q in by_county] == [kisumu.id]
        assert [q["application_id"] for q in by_track] == [nairobi.id]
        assert [q["application_id"] for q in by_sector] == [kisumu.id]

    def test_reviewers_cannot_report(self, make_user, actor):
        reviewer = make_user("reviewer_1")
        with pytest.raises(PermissionDenied):
            reporting.get_qualified_applications(actor(reviewer))


class TestRecipientList:
    def test_deduplicated_by_email(self, make_user, make_application, actor):
        oversight = make_user("oversight")
        make_application(email="owner@example.co.ke")
        make_application(email="Owner@Example.co.ke")
        make_application(email="someone.else@example.co.ke")

        recipients = reporting.get_recipient_list(actor(oversight))
        emails = [r["email"].lower() for r in recipients]
        assert emails == ["owner@example.co.ke", "someone.else@example.co.ke"]

    def test_status_filter(self, make_user, make_application, actor):
        admin = make_user("admin")
        make_application(status="submitted", email="a@example.co.ke")
        make_application(status="rejected", email="b@example.co.ke")

        recipients = reporting.get_recipient_list(actor(admin), status="rejected")
        assert [r["email"] for r in recipients] == ["b@example.co.ke"]

    def test_qualified_only(self, make_user, make_application, actor):
        admin = make_user("admin")
        qualified = make_application(status="approved", email="winner@example.co.ke")
        waiting = make_application(status="approved", email="waiting@example.co.ke")
        _qualify(qualified, phase1=80)
        _qualify(waiting, phase1=80, dd_status="in_progress")

        recipients = reporting.get_recipient_list(actor(admin), qualified_only=True)
        assert [r["application_id"] for r in recipients] == [qualified.id]
