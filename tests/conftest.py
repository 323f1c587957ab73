"""
Shared pytest fixtures for the Approval Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - roles: in-memory Role Directory, fresh per test
    - notifier: in-memory Notifier, fresh per test
    - invoice_template: two-stage ACCOUNTANT → CEO template
"""

import pytest

from approval_engine import create_app
from approval_engine.integrations import clear_completion_handlers, set_notifier, set_role_directory
from approval_engine.integrations.notifier import RecordingNotifier
from approval_engine.integrations.role_directory import StaticRoleDirectory
from approval_engine.models import db as _db


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
    """Per-test: open app context, fresh collaborators, recreate tables after."""
    set_role_directory(app, StaticRoleDirectory())
    set_notifier(app, RecordingNotifier())
    clear_completion_handlers(app)
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
    clear_completion_handlers(app)


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Collaborator fixtures ────────────────────────────────────────────────


@pytest.fixture()
def roles(app):
    """The StaticRoleDirectory installed for this test."""
    from approval_engine.integrations import get_role_directory
    return get_role_directory(app)


@pytest.fixture()
def notifier(app):
    """The RecordingNotifier installed for this test."""
    from approval_engine.integrations import get_notifier
    return get_notifier(app)


# ── Convenience fixtures ─────────────────────────────────────────────────


INVOICE_DEFINITION = {
    "name": "Invoice Approval",
    "request_type": "INVOICE",
    "stages": [
        {"stage_order": 1, "name": "Finance Review", "approver_roles": ["ACCOUNTANT"]},
        {"stage_order": 2, "name": "Executive Sign-off", "approver_roles": ["CEO"]},
    ],
}


@pytest.fixture()
def invoice_template():
    """Two-stage INVOICE template: Finance Review (ACCOUNTANT) → Executive Sign-off (CEO)."""
    from approval_engine.services import workflow_catalog
    return workflow_catalog.create_template(INVOICE_DEFINITION, created_by="admin")


@pytest.fixture()
def staff(roles):
    """Standard cast: two accountants, a CEO, and an employee with no approval role."""
    roles.assign("alice", "ACCOUNTANT")
    roles.assign("bob", "ACCOUNTANT")
    roles.assign("carol", "CEO")
    roles.assign("ursula", "EMPLOYEE")
    return roles
