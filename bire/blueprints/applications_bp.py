"""
Application lifecycle blueprint.

Blueprint: applications
Prefix: /api/v1

Endpoints:
    POST /applications                          -- create (draft, or submit=true)
    GET  /applications                          -- list (?status, ?track, ?observation_only)
    GET  /applications/<id>                     -- single application
    POST /applications/<id>/submit              -- draft → submitted (+ R1 auto-assign)
    POST /applications/<id>/transition          -- gated status change
    POST /applications/<id>/force-transition    -- audited admin override
    POST /applications/bulk-transition          -- per-item result
    GET  /applications/<id>/transitions         -- reachable statuses
"""

from flask import Blueprint, request

from bire.blueprints import json_body, require_fields
from bire.middleware.jwt_auth import get_current_user
from bire.services import application_lifecycle as lifecycle
from bire.services.permission import check_permission
from bire.utils.errors import api_ok
from bire.utils.helpers import parse_bool

applications_bp = Blueprint("applications", __name__, url_prefix="/api/v1")


@applications_bp.route("/applications", methods=["POST"])
def create_application():
    """Body: {business: {name, ...}, applicant: {first_name, last_name, email, ...},
    track?, is_observation_only?, submit?}
    """
    data = json_body()
    result = lifecycle.create_application(
        get_current_user(),
        business=data.get("business") or {},
        applicant=data.get("applicant") or {},
        track=data.get("track"),
        is_observation_only=parse_bool(data.get("is_observation_only"), False),
        submit=parse_bool(data.get("submit"), False),
    )
    return api_ok("Application created", status=201, application=result)


@applications_bp.route("/applications", methods=["GET"])
def list_applications():
    items = lifecycle.list_applications(
        get_current_user(),
        status=request.args.get("status"),
        track=request.args.get("track"),
        observation_only=parse_bool(request.args.get("observation_only")),
    )
    return api_ok(f"{len(items)} applications", items=items, total=len(items))


@applications_bp.route("/applications/<int:application_id>", methods=["GET"])
def get_application(application_id):
    result = lifecycle.get_application(application_id, get_current_user())
    return api_ok("Application loaded", application=result)


@applications_bp.route("/applications/<int:application_id>/submit", methods=["POST"])
def submit_application(application_id):
    result = lifecycle.submit_application(application_id, get_current_user())
    return api_ok("Application submitted", application=result)


@applications_bp.route("/applications/<int:application_id>/transition", methods=["POST"])
def transition_application(application_id):
    data = json_body()
    require_fields(data, "to_status")
    result = lifecycle.transition_application(
        application_id, data["to_status"], get_current_user(), data.get("notes"),
    )
    return api_ok(f"Application moved to {result['status']}", application=result)


@applications_bp.route("/applications/<int:application_id>/force-transition", methods=["POST"])
def force_transition(application_id):
    data = json_body()
    require_fields(data, "to_status")
    result = lifecycle.force_transition(
        application_id, data["to_status"], get_current_user(), data.get("notes"),
    )
    return api_ok(f"Application forced to {result['status']}", application=result)


@applications_bp.route("/applications/bulk-transition", methods=["POST"])
def bulk_transition():
    """Body: {application_ids: [...], to_status, notes?, force?}"""
    data = json_body()
    require_fields(data, "application_ids", "to_status")
    ids = data["application_ids"]
    if not isinstance(ids, list):
        ids = [ids]
    result = lifecycle.bulk_transition(
        ids,
        data["to_status"],
        get_current_user(),
        data.get("notes"),
        force=parse_bool(data.get("force"), True),
    )
    return api_ok(
        f"{result['success_count']} updated, {result['error_count']} failed",
        results=result,
    )


@applications_bp.route("/applications/<int:application_id>/transitions", methods=["GET"])
def available_transitions(application_id):
    check_permission(get_current_user(), "application.view")
    result = lifecycle.get_available_transitions(application_id)
    return api_ok("Available transitions", **result)
