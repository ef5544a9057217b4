"""
Reviewer assignment blueprint.

Blueprint: assignment
Prefix: /api/v1/assignments

Endpoints:
    POST /queue/initialize                   -- add missing reviewers to the queue
    POST /bulk                               -- {role}: assign every candidate
    POST /redistribute                       -- {role}: clear open slots and rebalance
    POST /reviewers/<reviewer_id>/toggle     -- {is_active}
    GET  /stats                              -- totals + per-reviewer load
    GET  /mine                               -- caller's work list (?page, ?per_page, ?track)
"""

from flask import Blueprint, request

from bire.blueprints import json_body, require_fields
from bire.core.exceptions import ValidationError
from bire.middleware.jwt_auth import get_current_user
from bire.services import reviewer_assignment as assignment
from bire.utils.errors import api_ok
from bire.utils.helpers import parse_bool, parse_int

assignment_bp = Blueprint("assignment", __name__, url_prefix="/api/v1/assignments")


@assignment_bp.route("/queue/initialize", methods=["POST"])
def initialize_queue():
    result = assignment.initialize_queue(get_current_user())
    return api_ok(result.pop("message"), **result)


@assignment_bp.route("/bulk", methods=["POST"])
def bulk_assign():
    data = json_body()
    require_fields(data, "role")
    result = assignment.bulk_assign(data["role"], get_current_user())
    return api_ok(result.pop("message"), **result)


@assignment_bp.route("/redistribute", methods=["POST"])
def redistribute():
    data = json_body()
    require_fields(data, "role")
    result = assignment.redistribute(data["role"], get_current_user())
    return api_ok(result.pop("message"), **result)


@assignment_bp.route("/reviewers/<reviewer_id>/toggle", methods=["POST"])
def toggle_reviewer(reviewer_id):
    data = json_body()
    active = parse_bool(data.get("is_active"))
    if active is None:
        raise ValidationError("is_active must be true or false")
    entries = assignment.toggle_reviewer_active(reviewer_id, active, get_current_user())
    return api_ok(
        f"Reviewer {'activated' if active else 'deactivated'}",
        entries=entries,
    )


@assignment_bp.route("/stats", methods=["GET"])
def stats():
    result = assignment.get_assignment_stats(get_current_user())
    return api_ok("Assignment stats", **result)


@assignment_bp.route("/mine", methods=["GET"])
def my_applications():
    result = assignment.get_assigned_applications(
        get_current_user(),
        page=parse_int(request.args.get("page"), 1),
        per_page=parse_int(request.args.get("per_page"), 20),
        track=request.args.get("track"),
    )
    return api_ok(f"{result['total']} assigned applications", **result)
