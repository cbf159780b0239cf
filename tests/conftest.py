"""
Shared pytest fixtures for the solar operations test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - rules: default milestone rules seeded into the DB
    - project / make_project: pre-created Project entities
"""

import pytest

from solarops import create_app
from solarops.models import db as _db
from solarops.models.project import Project
from solarops.services.milestone_rules import seed_default_rules


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


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def rules():
    """Seed the default admin + engineering rule table."""
    added = seed_default_rules()
    _db.session.commit()
    return added


_codes = iter(range(1, 99999))


@pytest.fixture()
def make_project():
    """Factory: create and commit a Project."""

    def _make(**kw):
        n = next(_codes)
        project = Project(
            project_code=kw.pop("project_code", f"PV-{n:04d}"),
            project_name=kw.pop("project_name", f"Rooftop Site {n}"),
            **kw,
        )
        _db.session.add(project)
        _db.session.commit()
        return project

    return _make


@pytest.fixture()
def project(make_project):
    return make_project()
