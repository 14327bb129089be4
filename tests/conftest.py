"""
Shared pytest fixtures for the PhD Progress Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, form types seeded (autouse)
    - client: Flask test client (function-scoped)
    - make_user: factory for users of any role
    - student / supervisor / admin / gec: one pre-created user per role
    - headers_for: X-User-Id header dict for API calls
"""

import itertools

import pytest

from phdtrack import create_app
from phdtrack.auth import USER_HEADER
from phdtrack.models import db as _db
from phdtrack.models.auth import ROLE_ADMIN, ROLE_GEC, ROLE_STUDENT, ROLE_SUPERVISOR, User
from phdtrack.services.stage_catalog import seed_form_types

_seq = itertools.count(1)


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
    """Per-test: open app context, seed form types, rollback + recreate tables after."""
    with app.app_context():
        seed_form_types()
        _db.session.commit()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Users ────────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """Return a factory creating and committing a User."""

    def _make(role=ROLE_STUDENT, *, full_name=None, is_active=True):
        n = next(_seq)
        user = User(
            email=f"{role}{n}@uni.test",
            full_name=full_name or f"{role.title()} {n}",
            role=role,
            is_active=is_active,
            student_number=f"PHD-{n:05d}" if role == ROLE_STUDENT else None,
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def student(make_user):
    return make_user(ROLE_STUDENT, full_name="Ayesha Khan")


@pytest.fixture()
def supervisor(make_user):
    return make_user(ROLE_SUPERVISOR, full_name="Dr. Supervisor")


@pytest.fixture()
def admin(make_user):
    return make_user(ROLE_ADMIN, full_name="Programme Office")


@pytest.fixture()
def gec(make_user):
    return make_user(ROLE_GEC, full_name="Committee Member")


@pytest.fixture()
def headers_for():
    """Return a function building the identity header for a user."""

    def _headers(user):
        return {USER_HEADER: str(user.id)}

    return _headers
