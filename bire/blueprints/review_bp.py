"""
Two-tier review blueprint.

Blueprint: review
Prefix: /api/v1

Endpoints:
    POST /applications/<id>/reviews             -- {reviewer_role, score, notes?, decision?}
    GET  /applications/<id>/reviews             -- blind status for the caller
    POST /applications/<id>/reviews/override    -- {decision, reason}
    POST /applications/<id>/lock                -- {reason}
    POST /applications/<id>/unlock              -- {reason}
    PUT  /applications/<id>/oversight-comment   -- {comment}
    POST /reviews/reconcile                     -- recompute aggregates
"""

from flask import Blueprint

from bire.blueprints import json_body, require_fields
from bire.middleware.jwt_auth import get_current_user
from bire.services import review_scoring as scoring
from bire.utils.errors import api_ok

review_bp = Blueprint("review", __name__, url_prefix="/api/v1")


@review_bp.route("/applications/<int:application_id>/reviews", methods=["POST"])
def submit_review(application_id):
    data = json_body()
    require_fields(data, "reviewer_role", "score")
    result = scoring.submit_review(
        application_id,
        get_current_user(),
        data["reviewer_role"],
        data["score"],
        notes=data.get("notes"),
        decision=data.get("decision"),
    )
    return api_ok("Review submitted", status=201, review=result)


@review_bp.route("/applications/<int:application_id>/reviews", methods=["GET"])
def review_status(application_id):
    result = scoring.get_review_status(application_id, get_current_user())
    return api_ok("Review status", review=result)


@review_bp.route("/applications/<int:application_id>/reviews/override", methods=["POST"])
def override(application_id):
    data = json_body()
    require_fields(data, "decision", "reason")
    result = scoring.override_decision(
        application_id, get_current_user(), data["decision"], data["reason"],
    )
    return api_ok("Review decision overridden", result=result)


@review_bp.route("/applications/<int:application_id>/lock", methods=["POST"])
def lock(application_id):
    data = json_body()
    require_fields(data, "reason")
    result = scoring.lock_application(application_id, get_current_user(), data["reason"])
    return api_ok("Application locked", result=result)


@review_bp.route("/applications/<int:application_id>/unlock", methods=["POST"])
def unlock(application_id):
    data = json_body()
    require_fields(data, "reason")
    result = scoring.unlock_application(application_id, get_current_user(), data["reason"])
    return api_ok("Application unlocked", result=result)


@review_bp.route("/applications/<int:application_id>/oversight-comment", methods=["PUT"])
def oversight_comment(application_id):
    data = json_body()
    result = scoring.save_oversight_comment(
        application_id, get_current_user(), data.get("comment") or "",
    )
    return api_ok("Comment saved", result=result)


@review_bp.route("/reviews/reconcile", methods=["POST"])
def reconcile():
    result = scoring.reconcile_eligibility(get_current_user())
    return api_ok(
        f"Reconciled {result['checked']} results, {result['approved']} approved",
        **result,
    )
