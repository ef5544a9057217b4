"""
Reporting & diagnostics blueprints (read-only).

Endpoints:
    GET /api/v1/reports/qualified      -- ?track, ?county, ?sector
    GET /api/v1/reports/recipients     -- ?status, ?qualified_only
    GET /api/v1/diagnostics/reviewers  -- workload recomputed from rows
    GET /api/v1/diagnostics/duplicates -- staff accounts sharing email / name
"""

from flask import Blueprint, request

from bire.middleware.jwt_auth import get_current_user
from bire.services import diagnostics
from bire.services import reporting
from bire.utils.errors import api_ok
from bire.utils.helpers import parse_bool

reporting_bp = Blueprint("reporting", __name__, url_prefix="/api/v1/reports")
diagnostics_bp = Blueprint("diagnostics", __name__, url_prefix="/api/v1/diagnostics")


@reporting_bp.route("/qualified", methods=["GET"])
def qualified():
    items = reporting.get_qualified_applications(
        get_current_user(),
        track=request.args.get("track"),
        county=request.args.get("county"),
        sector=request.args.get("sector"),
    )
    return api_ok(f"{len(items)} qualified applications", items=items, total=len(items))


@reporting_bp.route("/recipients", methods=["GET"])
def recipients():
    items = reporting.get_recipient_list(
        get_current_user(),
        status=request.args.get("status"),
        qualified_only=parse_bool(request.args.get("qualified_only"), False),
    )
    return api_ok(f"{len(items)} recipients", recipients=items, total=len(items))


@diagnostics_bp.route("/reviewers", methods=["GET"])
def reviewer_diagnostics():
    result = diagnostics.get_reviewer_diagnostics(get_current_user())
    return api_ok("Reviewer diagnostics", **result)


@diagnostics_bp.route("/duplicates", methods=["GET"])
def duplicate_reviewers():
    result = diagnostics.find_duplicate_reviewers(get_current_user())
    return api_ok("Duplicate reviewer check", **result)
