"""
BIRE Review Workflow
Blueprint registry and shared request helpers.

Blueprints parse input, call a service with the caller from
``get_current_user()`` and shape the JSON reply.  Services raise; the
handlers registered here turn each exception type into the standard
failure result:

    NotFoundError            → 404 ERR_NOT_FOUND
    ValidationError          → 400 ERR_VALIDATION_INVALID
    ConflictError            → 409 ERR_CONFLICT_DUPLICATE
    StateConflictError       → 409 ERR_CONFLICT_STATE (TransitionError included)
    PermissionDenied         → 403 ERR_FORBIDDEN, or 401 without a caller
    anything else            → 500 "Internal server error" (detail only logged)
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from bire.core.exceptions import (
    ConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from bire.services.permission import PermissionDenied
from bire.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Request JSON as a dict; empty dict for a missing or non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def require_fields(data: dict, *fields) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )


def register_error_handlers(app):
    """Map service exceptions to the ``{"success": false, ...}`` result."""

    @app.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @app.errorhandler(ConflictError)
    def _handle_conflict(error):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @app.errorhandler(StateConflictError)
    def _handle_state_conflict(error):
        details = {"current_status": error.current_status} if error.current_status else None
        return api_error(E.CONFLICT_STATE, str(error), details=details)

    @app.errorhandler(PermissionDenied)
    def _handle_forbidden(error):
        if error.user_id is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        logger.info(
            "Permission denied: %s", error.action,
            extra={"user_id": error.user_id, "event_type": "permission.denied"},
        )
        return api_error(E.FORBIDDEN, str(error))

    @app.errorhandler(404)
    def _handle_unknown_route(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _handle_method(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _handle_rate_limited(e):
        return api_error(E.VALIDATION_INVALID, "Too many requests", status=429)

    @app.errorhandler(Exception)
    def _handle_unexpected(error):
        if isinstance(error, HTTPException):
            return api_error(E.VALIDATION_INVALID, error.description or error.name, status=error.code)
        logger.exception("Unexpected error in endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
