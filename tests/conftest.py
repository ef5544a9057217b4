"""
Shared pytest fixtures for the BIRE review workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_application: ORM factories (commit, bypass the API)
    - actor: ``{"id", "role"}`` dict for a User, as services expect it
    - auth_headers: bearer header for a User, for API tests
"""

import itertools

import pytest

from bire import create_app
from bire.models import db as _db
from bire.models.application import Applicant, Application, Business
from bire.models.user import User
from bire.services.jwt_service import generate_access_token
from bire.utils.helpers import utcnow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Create and commit a User.  Pass ``id`` to control tie-break order."""
    counter = itertools.count(1)

    def _make(
        role="reviewer_1",
        *,
        id=None,
        first_name=None,
        last_name="Tester",
        email=None,
        is_active=True,
    ):
        n = next(counter)
        user = User(
            id=id or f"{role}-{n:03d}",
            role=role,
            first_name=first_name if first_name is not None else role.replace("_", " ").title(),
            last_name=last_name,
            email=email or f"{role}.{n}@bire.test",
            is_active=is_active,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_application():
    """Create and commit Applicant + Business + Application at any status."""
    counter = itertools.count(1)

    def _make(
        status="submitted",
        *,
        track="foundation",
        observation_only=False,
        county="Nairobi",
        sector="Agribusiness",
        name=None,
        email=None,
        user_id=None,
    ):
        n = next(counter)
        person = Applicant(
            user_id=user_id,
            first_name="Amina",
            last_name=f"Owner{n}",
            email=email or f"owner{n}@example.co.ke",
        )
        _db.session.add(person)
        _db.session.flush()
        biz = Business(
            applicant_id=person.id,
            name=name or f"Enterprise {n}",
            county=county,
            sector=sector,
            city="Nairobi",
        )
        _db.session.add(biz)
        _db.session.flush()
        application = Application(
            business_id=biz.id,
            status=status,
            track=track,
            is_observation_only=observation_only,
            submitted_at=None if status == "draft" else utcnow(),
        )
        _db.session.add(application)
        _db.session.commit()
        return application

    return _make


@pytest.fixture()
def actor():
    """Return the caller dict services take for a given User."""
    def _actor(user):
        return {"id": user.id, "role": user.role}
    return _actor


@pytest.fixture()
def auth_headers():
    """Return an Authorization header carrying a valid token for a User."""
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id, user.role)}"}
    return _headers
