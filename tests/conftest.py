import os, tempfile

# Point the app at a throwaway SQLite DB before anything imports it
_TMP = tempfile.mkdtemp(prefix="servicedesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["AUDIT_DIR"] = os.path.join(_TMP, "audit")
os.environ["POLICY_PATH"] = os.path.join(_TMP, "policy.yaml")
os.environ["NOTIFY_WEBHOOK_URL"] = ""

import pytest
from fastapi.testclient import TestClient

from backend.main import app as api
from app.core.database import Base, engine, SessionLocal
from app.crud.directory import user_crud, product_crud
from app.crud.routing import create_routing
from app.utils import policy
from app.utils.runtime_config import set_notify_webhook, set_notify_enabled


@pytest.fixture(autouse=True)
def _fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    policy.set_policy({})
    set_notify_webhook("")
    set_notify_enabled(True)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(api)


@pytest.fixture
def login(client):
    def _login(username: str, role: str) -> dict:
        r = client.post("/auth/login", json={"username": username, "role": role})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['access_token']}"}
    return _login


@pytest.fixture
def desk(db):
    """Requester, two approvers, one product and a two-level high-risk chain."""
    alice = user_crud.create_user(db, {"username": "alice", "name": "Alice Requester", "email": "alice@example.com", "role": "agent"})
    ann = user_crud.create_user(db, {"username": "ann", "name": "Ann Approver", "email": "ann@example.com", "role": "approver"})
    ben = user_crud.create_user(db, {"username": "ben", "name": "Ben Approver", "email": "ben@example.com", "role": "approver"})
    email = product_crud.create_product(db, {"name": "Email", "category": "Messaging"})
    create_routing(db, email.id, "high", ann.id, 1)
    create_routing(db, email.id, "high", ben.id, 2)
    return {"alice": alice.id, "ann": ann.id, "ben": ben.id, "product": email.id}


def change_payload(desk: dict, **overrides) -> dict:
    data = {
        "title": "Rotate mail relay certificates",
        "description": "Replace expiring TLS certificates on the outbound relays",
        "category": "Infrastructure",
        "priority": "high",
        "product_id": desk["product"],
        "risk_level": "high",
        "change_type": "normal",
        "requested_by": desk["alice"],
    }
    data.update(overrides)
    return data
