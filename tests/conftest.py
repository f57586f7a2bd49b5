"""
Shared pytest fixtures for the Approval Routing Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant / tenant_id: Pre-created Tenant entity and its id
    - make_user / make_org / make_role: small factories over the services
"""

import pytest

from app import create_app
from app.models import db as _db, drop_all_tables


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    from app.models.auth import Tenant
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    return t.id


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
        drop_all_tables()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _ensure_default_tenant()
        yield
        _db.session.rollback()
        drop_all_tables()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    from app.models.auth import Tenant
    return Tenant.query.filter_by(slug="test-default").first()


@pytest.fixture()
def tenant_id(default_tenant):
    return default_tenant.id


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user(tenant_id):
    """Create a User row; returns its id."""
    from app.models.auth import User

    counter = {"n": 0}

    def _make(name=None, status="active", tenant=None):
        counter["n"] += 1
        label = name or f"user{counter['n']}"
        user = User(
            tenant_id=tenant or tenant_id,
            email=f"{label.lower().replace(' ', '.')}.{counter['n']}@example.org",
            full_name=label,
            status=status,
        )
        _db.session.add(user)
        _db.session.commit()
        return user.id

    return _make


@pytest.fixture()
def make_org(tenant_id):
    """Create an Organization through the service; returns its dict."""
    from app.services.organization_service import create_organization

    counter = {"n": 0}

    def _make(name=None, parent=None, level=None, tenant=None):
        counter["n"] += 1
        data = {
            "code": f"ORG-{counter['n']:03d}",
            "name": name or f"Organization {counter['n']}",
        }
        if parent is not None:
            data["parent_id"] = parent["id"] if isinstance(parent, dict) else parent
        if level is not None:
            data["level"] = level
        return create_organization(tenant or tenant_id, data)

    return _make


@pytest.fixture()
def make_role(tenant_id):
    """Create an OrganizationRole through the service; returns its dict."""
    from app.services.role_inheritance_service import create_role

    def _make(name, rank=0, is_leadership=False, tenant=None):
        return create_role(tenant or tenant_id,
                           {"name": name, "rank": rank, "is_leadership": is_leadership})

    return _make


@pytest.fixture()
def routing(tenant_id, make_org, make_role, make_user):
    """Church → Committee → Parish → Department with one holder per role.

    Roles are assigned directly (no cascade) where their holders sit. The
    EQUIPMENT matrix covers 100,001–500,000 with two levels:
    Department Head @SAME (24h), then Parish Head @PARENT (48h).
    """
    import app.services.matrix_service as matrix_svc
    import app.services.role_inheritance_service as role_svc

    church = make_org("Church")
    committee = make_org("Committee", parent=church)
    parish = make_org("Parish", parent=committee)
    department = make_org("Department", parent=parish)

    roles = {
        name: make_role(name, rank=rank)
        for name, rank in (("Department Head", 30), ("Deputy Head", 20),
                           ("Parish Head", 50), ("Senior Pastor", 100))
    }
    users = {
        "dept_head": make_user("Dept Head"),
        "deputy": make_user("Deputy"),
        "parish_head": make_user("Parish Head"),
        "pastor": make_user("Pastor"),
        "requester": make_user("Requester"),
        "outsider": make_user("Outsider"),
    }
    placements = (
        (department, "Department Head", "dept_head"),
        (department, "Deputy Head", "deputy"),
        (parish, "Parish Head", "parish_head"),
        (church, "Senior Pastor", "pastor"),
    )
    for org, role_name, user_key in placements:
        role_svc.assign_role(tenant_id, org["id"], roles[role_name]["id"], cascade=False)
        role_svc.add_membership(tenant_id, org["id"], users[user_key], roles[role_name]["id"])

    matrix = matrix_svc.create_matrix(tenant_id, {
        "name": "Equipment (medium)",
        "category": "EQUIPMENT",
        "min_amount": 100001,
        "max_amount": 500000,
        "priority": 70,
        "levels": [
            {"required_roles": ["Department Head"], "organization_level_mode": "SAME",
             "timeout_hours": 24},
            {"required_roles": ["Parish Head"], "organization_level_mode": "PARENT",
             "timeout_hours": 48},
        ],
    })
    return {
        "orgs": {"church": church, "committee": committee, "parish": parish,
                 "department": department},
        "roles": roles,
        "users": users,
        "matrix": matrix,
    }
