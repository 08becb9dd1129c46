from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from backoffice.database import atomic, create_db_engine, get_db, init_db
from backoffice.main import app
from backoffice.models.approval import ApprovalObjectType
from backoffice.models.catalog import Product, Store
from backoffice.models.user import User
from backoffice.schemas.approval import ApprovalRuleCreate
from backoffice.services import auth_service
from backoffice.services.approval_rule_service import ApprovalRuleEngine
from backoffice.services.inventory_service import InventoryLedger

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
PASSWORD = "s3cret-pass"

# bcrypt is slow on purpose; hash once per run
PASSWORD_HASH = auth_service.hash_password(PASSWORD)


@pytest.fixture
def engine(tmp_path):
    # File-backed so that threads and the test client see the same database
    eng = create_db_engine(f"sqlite:///{tmp_path / 'backoffice-test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def _user(tenant_id, username, roles):
    user = User(tenant_id=tenant_id, username=username, display_name=username.title(), password_hash=PASSWORD_HASH)
    user.roles = roles
    return user


@pytest.fixture
def seed(session_factory):
    """Two stores with stock at the first, four users and a foreign tenant."""
    session = session_factory()
    try:
        with atomic(session):
            north = Store(tenant_id=TENANT, code="N01", name="North")
            south = Store(tenant_id=TENANT, code="S01", name="South")
            foreign_store = Store(tenant_id=OTHER_TENANT, code="X01", name="Elsewhere")
            widget = Product(tenant_id=TENANT, sku="WID-1", name="Widget", cost=150.0, price=199.0)
            gadget = Product(tenant_id=TENANT, sku="GAD-1", name="Gadget", cost=20.0, price=35.0)
            gizmo = Product(tenant_id=TENANT, sku="GIZ-1", name="Gizmo", cost=5.0, price=9.5)
            clerk = _user(TENANT, "clerk", ["Staff"])
            manager1 = _user(TENANT, "manager1", ["Manager"])
            manager2 = _user(TENANT, "manager2", ["Manager"])
            admin = _user(TENANT, "admin", ["admin"])
            outsider = _user(OTHER_TENANT, "outsider", ["Manager"])
            session.add_all([north, south, foreign_store, widget, gadget, gizmo,
                             clerk, manager1, manager2, admin, outsider])
            session.flush()

            ledger = InventoryLedger(session)
            ledger.receive(TENANT, north.id, widget.id, 100, reference="seed")
            ledger.receive(TENANT, north.id, gadget.id, 50, reference="seed")
            ledger.receive(TENANT, north.id, gizmo.id, 5, reference="seed")

        return SimpleNamespace(
            tenant=TENANT,
            north=north.id,
            south=south.id,
            foreign_store=foreign_store.id,
            widget=widget.id,
            gadget=gadget.id,
            gizmo=gizmo.id,
            clerk=clerk.id,
            manager1=manager1.id,
            manager2=manager2.id,
            admin=admin.id,
            outsider=outsider.id,
        )
    finally:
        session.close()


def add_manager_rule(session, user_id, min_amount=1000.0, min_approvals=2, **conditions):
    """Transfers at or above ``min_amount`` need ``min_approvals`` Managers."""
    data = ApprovalRuleCreate(
        name=f"Transfers over {min_amount:g}",
        object_type=ApprovalObjectType.INVENTORY_TRANSFER,
        conditions={
            "requires_approval": True,
            "min_amount": min_amount,
            "approval_levels": [{"level": 1, "min_approvals": min_approvals, "approver_roles": ["Manager"]}],
            **conditions,
        },
    )
    with atomic(session):
        return ApprovalRuleEngine(session).create_rule(TENANT, user_id, data)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # Not entered as a context manager: the lifespan would touch the default database
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id, username="user", tenant_id=TENANT):
    token = auth_service.create_access_token(user_id, username, tenant_id)
    return {"Authorization": f"Bearer {token}"}
