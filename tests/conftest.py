"""
Shared pytest fixtures for the NPT approval workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_workflow / make_report / assign / delegate: row builders
    - rig_roles: rig 104 with all four roles held
"""

from datetime import date, datetime, timezone

import pytest

from app import create_app
from app.models import db as _db
from app.models.npt import NptReport, STATUS_DRAFT
from app.models.workflow import Delegation, RoleAssignment, WorkflowDefinition, WorkflowStep

RIG = 104
NOW = datetime(2024, 3, 15, 8, 0, tzinfo=timezone.utc)

ROLE_HOLDERS = {
    "toolpusher": "john-toolpusher",
    "e_maintenance": "sarah-emaintenance",
    "ds": "haitham-supervisor",
    "ose": "pme-103",
}


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


# ── Row builders ─────────────────────────────────────────────────────────


@pytest.fixture()
def make_workflow():
    """Create a workflow. ``steps`` items: "role_key", ("user", user_id), or dicts."""

    def _make(steps, rig_id=None, name="Test workflow", is_active=True, created_at=None):
        wf = WorkflowDefinition(name=name, rig_id=rig_id, is_active=is_active)
        if created_at is not None:
            wf.created_at = created_at
        for order, step_def in enumerate(steps, start=1):
            if isinstance(step_def, dict):
                kwargs = {"step_order": order, "is_required": True, **step_def}
            elif isinstance(step_def, tuple) and step_def[0] == "user":
                kwargs = {"step_order": order, "approver_type": "user", "user_id": step_def[1]}
            else:
                kwargs = {"step_order": order, "approver_type": "role", "role_key": step_def}
            wf.steps.append(WorkflowStep(**kwargs))
        _db.session.add(wf)
        _db.session.commit()
        return wf

    return _make


@pytest.fixture()
def assign():
    def _assign(role_key, user_id, rig_id=RIG, is_active=True):
        ra = RoleAssignment(rig_id=rig_id, role_key=role_key, user_id=user_id, is_active=is_active)
        _db.session.add(ra)
        _db.session.commit()
        return ra

    return _assign


@pytest.fixture()
def delegate():
    def _delegate(delegator, delegate_to, starts_at, ends_at, rig_id=None, role_key=None,
                  is_active=True, created_at=None):
        d = Delegation(
            delegator_user_id=delegator,
            delegate_user_id=delegate_to,
            starts_at=starts_at,
            ends_at=ends_at,
            rig_id=rig_id,
            role_key=role_key,
            is_active=is_active,
        )
        if created_at is not None:
            d.created_at = created_at
        _db.session.add(d)
        _db.session.commit()
        return d

    return _delegate


@pytest.fixture()
def make_report():
    def _make(rig_id=RIG, submitted_by="driller-1", status=STATUS_DRAFT, **fields):
        report = NptReport(
            rig_id=rig_id,
            submitted_by=submitted_by,
            report_date=fields.pop("report_date", date(2024, 3, 14)),
            hours=fields.pop("hours", 2.5),
            npt_type=fields.pop("npt_type", "Abraj"),
            status=status,
            **fields,
        )
        _db.session.add(report)
        _db.session.commit()
        return report

    return _make


@pytest.fixture()
def rig_roles(assign):
    """All four roles on rig 104 held by the demo users."""
    return {role: assign(role, user).user_id for role, user in ROLE_HOLDERS.items()}
