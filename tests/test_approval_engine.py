from datetime import datetime

import pytest
from sqlalchemy.dialects import postgresql

from app.core.database import SessionLocal
from app.core.errors import AlreadyDecided, InvalidRouting, NotFound, OutOfSequence
from app.crud import approval as approval_crud
from app.crud.approval import initialize_approvals, list_change_approvals, record_approval_decision
from app.crud.change import create_change
from app.crud.directory import user_crud
from app.crud.routing import create_routing
from app.models.change import Change
from app.utils import policy

from conftest import change_payload


def _statuses(db, change_id):
    db.expire_all()
    return [(r.approval_level, r.status) for r in list_change_approvals(db, change_id)]


def test_initialize_creates_one_pending_row_per_level(db, desk):
    change = create_change(db, change_payload(desk))
    rows = list_change_approvals(db, change.id)
    assert [(r.approval_level, r.approver_id, r.status) for r in rows] == [
        (1, desk["ann"], "pending"),
        (2, desk["ben"], "pending"),
    ]
    assert change.status == "pending"
    assert change.approval_token


def test_no_routing_means_no_workflow(db, desk):
    change = create_change(db, change_payload(desk, risk_level="low"))
    assert list_change_approvals(db, change.id) == []
    assert change.status == "pending"
    assert change.approval_token is None


def test_inactive_routing_is_ignored(db, desk):
    create_routing(db, desk["product"], "medium", desk["ann"], 1, is_active=False)
    change = create_change(db, change_payload(desk, risk_level="medium"))
    assert list_change_approvals(db, change.id) == []


def test_duplicate_level_is_invalid_routing(db, desk):
    create_routing(db, desk["product"], "high", desk["alice"], 2)
    with pytest.raises(InvalidRouting) as exc:
        create_change(db, change_payload(desk))
    assert exc.value.levels == [1, 2, 2]
    assert db.query(Change).count() == 0


def test_gap_in_levels_is_invalid_routing(db, desk):
    create_routing(db, desk["product"], "medium", desk["ann"], 1)
    create_routing(db, desk["product"], "medium", desk["ben"], 3)
    change = Change(title="t", description="d", category="c", product_id=desk["product"],
                    risk_level="medium", change_type="normal", requested_by=desk["alice"])
    db.add(change)
    db.commit()
    with pytest.raises(InvalidRouting):
        initialize_approvals(db, change)
    assert list_change_approvals(db, change.id) == []


def test_initialize_twice_is_refused(db, desk):
    change = create_change(db, change_payload(desk))
    with pytest.raises(ValueError):
        initialize_approvals(db, change)


def test_standard_change_is_auto_approved(db, desk):
    change = create_change(db, change_payload(desk, change_type="standard"))
    assert change.status == "approved"
    assert change.approved_by == "Auto-approved (Standard Change)"
    assert list_change_approvals(db, change.id) == []


def test_approving_all_levels_in_order(db, desk):
    change = create_change(db, change_payload(desk))

    first = record_approval_decision(db, change.id, desk["ann"], "approved", "looks fine")
    assert (first.completed, first.approved, first.next_level) == (False, False, 2)
    assert first.as_response() == {"completed": False, "approved": False, "nextLevel": 2}
    assert db.get(Change, change.id).status == "pending"

    second = record_approval_decision(db, change.id, desk["ben"], "approved")
    assert (second.completed, second.approved) == (True, True)
    assert second.as_response() == {"completed": True, "approved": True}

    db.expire_all()
    done = db.get(Change, change.id)
    assert done.status == "approved"
    assert done.approved_by == "Ben Approver"
    assert _statuses(db, change.id) == [(1, "approved"), (2, "approved")]


@pytest.mark.parametrize("levels", [1, 3])
def test_chain_of_any_length_completes_on_last_decision(db, desk, levels):
    approvers = [user_crud.create_user(db, {"username": f"cab{n}", "role": "approver"}).id
                 for n in range(1, levels + 1)]
    for n, approver_id in enumerate(approvers, start=1):
        create_routing(db, desk["product"], "medium", approver_id, n)
    change = create_change(db, change_payload(desk, risk_level="medium"))
    assert _statuses(db, change.id) == [(n, "pending") for n in range(1, levels + 1)]

    for n, approver_id in enumerate(approvers, start=1):
        result = record_approval_decision(db, change.id, approver_id, "approved")
        db.expire_all()
        if n < levels:
            assert (result.completed, result.next_level) == (False, n + 1)
            assert db.get(Change, change.id).status == "pending"
        else:
            assert (result.completed, result.approved) == (True, True)
            assert db.get(Change, change.id).status == "approved"


def test_decision_locks_the_change_row(db, desk, monkeypatch):
    change = create_change(db, change_payload(desk))
    locked = []
    real = approval_crud._lock_change

    def spy(session, change_id):
        row = real(session, change_id)
        locked.append(change_id)
        return row

    monkeypatch.setattr(approval_crud, "_lock_change", spy)
    record_approval_decision(db, change.id, desk["ann"], "approved")
    assert locked == [change.id]

    # the lock is a real SELECT ... FOR UPDATE on dialects that support it
    sql = str(db.query(Change).filter(Change.id == change.id).with_for_update()
              .statement.compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql


def test_decision_sees_levels_committed_by_other_sessions(db, desk):
    policy.set_policy({"approvals": {"strict_sequence": False}})
    change = create_change(db, change_payload(desk))
    row_id = list_change_approvals(db, change.id)[0].id

    # level 1 decided through another session while ours holds stale rows
    other = SessionLocal()
    try:
        assert approval_crud._claim_approval(other, row_id, "approved", None, datetime.utcnow())
        other.commit()
    finally:
        other.close()

    result = record_approval_decision(db, change.id, desk["ben"], "approved")
    assert (result.completed, result.approved) == (True, True)
    db.expire_all()
    assert db.get(Change, change.id).status == "approved"


def test_decision_stamps_row(db, desk):
    change = create_change(db, change_payload(desk))
    record_approval_decision(db, change.id, desk["ann"], "approved", "ok for Sunday window")
    db.expire_all()
    row = list_change_approvals(db, change.id)[0]
    assert row.approved_at is not None
    assert row.comments == "ok for Sunday window"


def test_rejection_short_circuits_and_leaves_later_rows_pending(db, desk):
    change = create_change(db, change_payload(desk))

    result = record_approval_decision(db, change.id, desk["ann"], "rejected", "no rollback plan")
    assert (result.completed, result.approved, result.next_level) == (True, False, None)
    assert db.get(Change, change.id).status == "rejected"
    assert _statuses(db, change.id) == [(1, "rejected"), (2, "pending")]

    with pytest.raises(AlreadyDecided):
        record_approval_decision(db, change.id, desk["ben"], "approved")
    db.expire_all()
    assert db.get(Change, change.id).status == "rejected"
    assert _statuses(db, change.id) == [(1, "rejected"), (2, "pending")]


def test_rejection_can_skip_remaining_rows(db, desk):
    policy.set_policy({"approvals": {"skip_pending_on_reject": True}})
    change = create_change(db, change_payload(desk))
    record_approval_decision(db, change.id, desk["ann"], "rejected")
    assert _statuses(db, change.id) == [(1, "rejected"), (2, "skipped")]


def test_rejection_at_last_level(db, desk):
    change = create_change(db, change_payload(desk))
    record_approval_decision(db, change.id, desk["ann"], "approved")
    result = record_approval_decision(db, change.id, desk["ben"], "rejected")
    assert (result.completed, result.approved) == (True, False)
    db.expire_all()
    assert db.get(Change, change.id).status == "rejected"


def test_not_found_cases(db, desk):
    change = create_change(db, change_payload(desk))
    with pytest.raises(NotFound):
        record_approval_decision(db, 9999, desk["ann"], "approved")
    with pytest.raises(NotFound):
        record_approval_decision(db, change.id, desk["alice"], "approved")

    record_approval_decision(db, change.id, desk["ann"], "approved")
    with pytest.raises(NotFound):
        record_approval_decision(db, change.id, desk["ann"], "approved")

    no_flow = create_change(db, change_payload(desk, risk_level="low"))
    with pytest.raises(NotFound):
        record_approval_decision(db, no_flow.id, desk["ann"], "approved")


def test_invalid_action_is_rejected_before_any_lookup(db, desk):
    change = create_change(db, change_payload(desk))
    with pytest.raises(ValueError):
        record_approval_decision(db, change.id, desk["ann"], "maybe")
    assert _statuses(db, change.id) == [(1, "pending"), (2, "pending")]


def test_strict_sequence_blocks_higher_level_first(db, desk):
    change = create_change(db, change_payload(desk))
    with pytest.raises(OutOfSequence) as exc:
        record_approval_decision(db, change.id, desk["ben"], "approved")
    assert (exc.value.level, exc.value.pending_level) == (2, 1)
    assert _statuses(db, change.id) == [(1, "pending"), (2, "pending")]


def test_advisory_sequence_allows_any_order(db, desk):
    policy.set_policy({"approvals": {"strict_sequence": False}})
    change = create_change(db, change_payload(desk))

    early = record_approval_decision(db, change.id, desk["ben"], "approved")
    assert (early.completed, early.next_level) == (False, None)
    assert early.as_response() == {"completed": False, "approved": False}

    last = record_approval_decision(db, change.id, desk["ann"], "approved")
    assert (last.completed, last.approved) == (True, True)


def test_same_approver_on_two_levels_decides_lowest_first(db, desk):
    carl = user_crud.create_user(db, {"username": "carl", "role": "approver"})
    create_routing(db, desk["product"], "medium", carl.id, 1)
    create_routing(db, desk["product"], "medium", carl.id, 2)
    change = create_change(db, change_payload(desk, risk_level="medium"))

    first = record_approval_decision(db, change.id, carl.id, "approved")
    assert (first.level, first.next_level) == (1, 2)
    second = record_approval_decision(db, change.id, carl.id, "approved")
    assert (second.level, second.completed, second.approved) == (2, True, True)


def test_conditional_update_only_claims_pending_rows(db, desk):
    change = create_change(db, change_payload(desk))
    row_id = list_change_approvals(db, change.id)[0].id

    # two sessions racing for the same row
    s1, s2 = SessionLocal(), SessionLocal()
    try:
        now = datetime.utcnow()
        assert approval_crud._claim_approval(s1, row_id, "approved", None, now) is True
        s1.commit()
        assert approval_crud._claim_approval(s2, row_id, "rejected", None, now) is False
        s2.rollback()
    finally:
        s1.close()
        s2.close()
    assert _statuses(db, change.id)[0] == (1, "approved")


def test_lost_race_reports_already_decided(db, desk, monkeypatch):
    change = create_change(db, change_payload(desk))
    monkeypatch.setattr(approval_crud, "_claim_approval", lambda *a, **kw: False)
    with pytest.raises(AlreadyDecided):
        record_approval_decision(db, change.id, desk["ann"], "approved")
    db.expire_all()
    assert db.get(Change, change.id).status == "pending"
