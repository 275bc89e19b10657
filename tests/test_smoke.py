from fastapi.testclient import TestClient
from backend.main import app

client = TestClient(app)

def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert "change_approvals" in r.json()["tables"]

def test_public_endpoints():
    assert client.get("/public/healthz").json() == {"status": "ok"}
    assert client.get("/public/version").json()["name"] == "servicedesk-api"

def test_metrics_exposed():
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "approval_decisions_total" in r.text

def test_changes_need_auth():
    r = client.get("/api/changes")
    assert r.status_code == 401

def test_refresh_token_roundtrip():
    tokens = client.post("/auth/login", json={"username": "ann", "role": "approver"}).json()
    r = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert r.status_code == 200
    # an access token is not accepted as a refresh token
    assert client.post("/auth/refresh", json={"refresh_token": tokens["access_token"]}).status_code == 401
    assert client.post("/auth/login", json={"username": "x", "role": "root"}).status_code == 400

def test_policy_defaults_visible():
    headers = {"Authorization": "Bearer " + client.post("/auth/login", json={"username": "vic", "role": "viewer"}).json()["access_token"]}
    pol = client.get("/api/policy", headers=headers).json()["policy"]
    assert pol["approvals"]["strict_sequence"] is True
    assert pol["changes"]["auto_approve_change_types"] == ["standard"]
