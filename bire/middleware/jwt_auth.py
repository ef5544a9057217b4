"""
JWT Auth Middleware: resolves the calling user from the Authorization header.

Sets ``g.current_user`` to ``{"id": <user id>, "role": <role>}`` for a valid
bearer token whose subject is an existing, active user, otherwise ``None``.
The role is taken from the user row, not from the token, so a role change
takes effect immediately.

Blueprints read the identity through ``get_current_user()`` and reply 401
when it is missing; authorization itself happens in the services.
"""

import logging

import jwt as pyjwt
from flask import g, request

from bire.models import db
from bire.models.user import User
from bire.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that never carry identity
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def get_current_user() -> dict | None:
    """Return the authenticated caller as ``{"id", "role"}`` or None."""
    return getattr(g, "current_user", None)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.current_user = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired token rejected", extra={"path": path})
            return
        except pyjwt.InvalidTokenError:
            logger.warning("Invalid token rejected", extra={"path": path})
            return

        user = db.session.get(User, payload.get("sub"))
        if user is None or not user.is_active:
            return
        g.current_user = {"id": user.id, "role": user.role}
