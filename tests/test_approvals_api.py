from conftest import change_payload


def _submit(client, login, desk, **overrides):
    r = client.post("/api/changes", json=change_payload(desk, **overrides), headers=login("alice", "agent"))
    assert r.status_code == 201, r.text
    return r.json()


def test_two_level_approval_scenario(client, login, desk):
    change = _submit(client, login, desk)
    assert change["status"] == "pending"

    viewer = login("vic", "viewer")
    rows = client.get(f"/api/changes/{change['id']}/approvals", headers=viewer).json()
    assert [(r["approval_level"], r["approver_id"], r["status"]) for r in rows] == [
        (1, desk["ann"], "pending"),
        (2, desk["ben"], "pending"),
    ]

    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ann"], "action": "approved", "comments": "ok"},
                    headers=login("ann", "approver"))
    assert r.status_code == 200, r.text
    assert r.json() == {"completed": False, "approved": False, "nextLevel": 2}

    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ben"], "action": "approved"},
                    headers=login("ben", "approver"))
    assert r.status_code == 200, r.text
    assert r.json() == {"completed": True, "approved": True}

    got = client.get(f"/api/changes/{change['id']}", headers=viewer).json()
    assert got["status"] == "approved"
    assert got["approved_by"] == "Ben Approver"


def test_rejection_scenario(client, login, desk):
    change = _submit(client, login, desk)

    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ann"], "action": "rejected", "comments": "missing rollback"},
                    headers=login("ann", "approver"))
    assert r.json() == {"completed": True, "approved": False}

    rows = client.get(f"/api/changes/{change['id']}/approvals", headers=login("vic", "viewer")).json()
    assert [r["status"] for r in rows] == ["rejected", "pending"]

    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ben"], "action": "approved"},
                    headers=login("ben", "approver"))
    assert r.status_code == 409
    assert r.json()["error"] == "already_decided"

    got = client.get(f"/api/changes/{change['id']}", headers=login("vic", "viewer")).json()
    assert got["status"] == "rejected"


def test_double_submit_is_not_found(client, login, desk):
    change = _submit(client, login, desk)
    body = {"approverId": desk["ann"], "action": "approved"}
    headers = login("ann", "approver")
    assert client.post(f"/api/changes/{change['id']}/approve", json=body, headers=headers).status_code == 200
    r = client.post(f"/api/changes/{change['id']}/approve", json=body, headers=headers)
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"


def test_out_of_sequence_is_conflict(client, login, desk):
    change = _submit(client, login, desk)
    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ben"], "action": "approved"},
                    headers=login("ben", "approver"))
    assert r.status_code == 409
    assert r.json()["error"] == "out_of_sequence"


def test_approver_cannot_decide_for_someone_else(client, login, desk):
    change = _submit(client, login, desk)
    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ann"], "action": "approved"},
                    headers=login("ben", "approver"))
    assert r.status_code == 403


def test_admin_may_record_on_behalf(client, login, desk):
    change = _submit(client, login, desk)
    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approver_id": desk["ann"], "action": "approved"},
                    headers=login("root", "admin"))
    assert r.status_code == 200
    assert r.json()["nextLevel"] == 2


def test_decision_body_is_validated(client, login, desk):
    change = _submit(client, login, desk)
    headers = login("ann", "approver")
    bad_action = client.post(f"/api/changes/{change['id']}/approve",
                             json={"approverId": desk["ann"], "action": "maybe"}, headers=headers)
    assert bad_action.status_code == 422
    missing_approver = client.post(f"/api/changes/{change['id']}/approve",
                                   json={"action": "approved"}, headers=headers)
    assert missing_approver.status_code == 422


def test_decision_requires_approver_role(client, login, desk):
    change = _submit(client, login, desk)
    body = {"approverId": desk["ann"], "action": "approved"}
    assert client.post(f"/api/changes/{change['id']}/approve", json=body).status_code == 401
    assert client.post(f"/api/changes/{change['id']}/approve", json=body,
                       headers=login("alice", "agent")).status_code == 403


def test_unknown_change(client, login, desk):
    r = client.post("/api/changes/4242/approve",
                    json={"approverId": desk["ann"], "action": "approved"},
                    headers=login("ann", "approver"))
    assert r.status_code == 404
    assert client.get("/api/changes/4242/approvals", headers=login("vic", "viewer")).status_code == 404


def test_invalid_routing_blocks_submission(client, login, desk):
    admin = login("root", "admin")
    r = client.post("/api/approval-routing", headers=admin, json={
        "product_id": desk["product"], "risk_level": "high", "approver_id": desk["alice"], "approval_level": 1,
    })
    assert r.status_code == 201

    r = client.post("/api/changes", json=change_payload(desk), headers=login("alice", "agent"))
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_routing"
    assert client.get("/api/changes", headers=admin).json() == []


def test_decisions_are_audited(client, login, desk):
    change = _submit(client, login, desk)
    client.post(f"/api/changes/{change['id']}/approve",
                json={"approverId": desk["ann"], "action": "approved"},
                headers=login("ann", "approver"))
    rows = client.get("/api/audit", params={"entity_type": "change", "entity_id": change["id"]},
                      headers=login("root", "admin")).json()
    actions = [r["action"] for r in rows]
    assert "CHANGE_CREATED" in actions
    assert "APPROVAL_DECIDED" in actions
    decided = next(r for r in rows if r["action"] == "APPROVAL_DECIDED")
    assert decided["actor"] == "ann"
    assert decided["details"]["next_level"] == 2


def test_registered_user_cannot_claim_a_higher_role(client, login, desk):
    tokens = client.post("/auth/login", json={"username": "ben", "role": "admin"}).json()
    assert tokens["role"] == "approver"
    change = _submit(client, login, desk)
    r = client.post(f"/api/changes/{change['id']}/approve",
                    json={"approverId": desk["ann"], "action": "approved"},
                    headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert r.status_code == 403
