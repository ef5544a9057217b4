"""Shared utility functions for services and blueprints.

get_or_raise:        primary-key lookup raising NotFoundError
as_utc:              normalise SQLite-naive datetimes to UTC-aware
utcnow:              single clock used by every workflow timestamp
commit_or_raise:     commit translating IntegrityError to ConflictError
parse_bool / parse_int: tolerant query-string parsing for blueprints
"""
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from bire.core.exceptions import ConflictError, NotFoundError
from bire.models import db

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime | None) -> str | None:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_raise(resource: str = "Record"):
    """Commit the current session; roll back and raise ConflictError on IntegrityError.

    Other database errors roll back and propagate to the generic 500 handler.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise ConflictError(resource, "unique", str(exc.orig)) from exc
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        raise


# ── Request parsing ──────────────────────────────────────────────────────────

def parse_bool(value, default=None):
    """Parse 'true'/'false'/'1'/'0' (any case); return *default* otherwise."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return default


def parse_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
