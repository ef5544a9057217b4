"""
Due-diligence blueprint.

Blueprint: due_diligence
Prefix: /api/v1

Endpoints:
    GET  /due-diligence                                      -- queue (?status, ?oversight_only)
    POST /due-diligence/check-deadlines                      -- run the approval sweep now
    GET  /applications/<id>/due-diligence                    -- record + items + rubric
    POST /applications/<id>/due-diligence/recommend          -- {justification}
    PUT  /applications/<id>/due-diligence/phases/<phase>     -- {items: [...], notes?}
    POST /applications/<id>/due-diligence/submit             -- (re-)request approval
    GET  /applications/<id>/due-diligence/validators         -- eligible validators
    POST /applications/<id>/due-diligence/validator          -- {validator_id}
    POST /applications/<id>/due-diligence/validator-action   -- {action, comments}
    POST /applications/<id>/due-diligence/final-decision     -- {verdict, reason}
"""

from flask import Blueprint, request

from bire.blueprints import json_body, require_fields
from bire.middleware.jwt_auth import get_current_user
from bire.services import due_diligence as dd
from bire.utils.errors import api_ok
from bire.utils.helpers import parse_bool

due_diligence_bp = Blueprint("due_diligence", __name__, url_prefix="/api/v1")


@due_diligence_bp.route("/due-diligence", methods=["GET"])
def queue():
    items = dd.get_dd_queue(
        get_current_user(),
        status=request.args.get("status"),
        oversight_only=parse_bool(request.args.get("oversight_only"), False),
    )
    return api_ok(f"{len(items)} due diligence records", items=items, total=len(items))


@due_diligence_bp.route("/due-diligence/check-deadlines", methods=["POST"])
def check_deadlines():
    result = dd.check_approval_deadlines(actor=get_current_user())
    return api_ok(f"Processed {result['reassigned']} expired approval(s)", **result)


@due_diligence_bp.route("/applications/<int:application_id>/due-diligence", methods=["GET"])
def get_record(application_id):
    record = dd.get_dd_record(application_id, get_current_user())
    return api_ok("Due diligence record", record=record)


@due_diligence_bp.route("/applications/<int:application_id>/due-diligence/recommend", methods=["POST"])
def recommend(application_id):
    data = json_body()
    record = dd.recommend_for_due_diligence(
        application_id, get_current_user(), data.get("justification") or "",
    )
    return api_ok("Application flagged for due diligence", record=record)


@due_diligence_bp.route(
    "/applications/<int:application_id>/due-diligence/phases/<int:phase>", methods=["PUT"],
)
def save_scores(application_id, phase):
    data = json_body()
    record = dd.save_dd_scores(
        application_id, get_current_user(), phase, data.get("items"), data.get("notes"),
    )
    return api_ok(f"Phase {phase} scores saved", record=record)


@due_diligence_bp.route("/applications/<int:application_id>/due-diligence/submit", methods=["POST"])
def submit_primary(application_id):
    record = dd.submit_primary_review(application_id, get_current_user())
    return api_ok("Primary review submitted", record=record)


@due_diligence_bp.route("/applications/<int:application_id>/due-diligence/validators", methods=["GET"])
def validators(application_id):
    items = dd.get_available_validators(application_id, get_current_user())
    return api_ok(f"{len(items)} validators available", validators=items)


@due_diligence_bp.route("/applications/<int:application_id>/due-diligence/validator", methods=["POST"])
def select_validator(application_id):
    data = json_body()
    require_fields(data, "validator_id")
    record = dd.select_validator(application_id, get_current_user(), data["validator_id"])
    return api_ok("Validator selected", record=record)


@due_diligence_bp.route(
    "/applications/<int:application_id>/due-diligence/validator-action", methods=["POST"],
)
def validator_action(application_id):
    data = json_body()
    require_fields(data, "action")
    record = dd.submit_validator_action(
        application_id, get_current_user(), data["action"], data.get("comments") or "",
    )
    message = (
        "Due diligence approved"
        if record["dd_status"] == "approved"
        else "Due diligence queried and returned to the primary reviewer"
    )
    return api_ok(message, record=record)


@due_diligence_bp.route(
    "/applications/<int:application_id>/due-diligence/final-decision", methods=["POST"],
)
def final_decision(application_id):
    data = json_body()
    require_fields(data, "verdict")
    record = dd.record_final_decision(
        application_id, get_current_user(), data["verdict"], data.get("reason") or "",
    )
    return api_ok(f"Final decision ({record['final_verdict'].upper()}) saved", record=record)
