from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.crud.approval import initialize_approvals
from app.metrics import changes_created_total
from app.models.change import Change, ChangeHistory, ChangeStatus, ChangeType, RiskLevel, CLOSED_STATUSES
from app.models.product import Product
from app.models.user import User
from app.services.audit import record_audit
from app.utils import policy

logger = logging.getLogger(__name__)

VALID_STATUS = {s.value for s in ChangeStatus}
VALID_TYPES = {t.value for t in ChangeType}
VALID_RISK = {r.value for r in RiskLevel}
VALID_PRIORITY = {"low", "medium", "high", "critical"}

AUTO_APPROVED_BY = "Auto-approved (Standard Change)"

# fields a manual edit may touch
EDITABLE = (
    "title", "description", "status", "priority", "category",
    "planned_date", "start_date", "end_date", "rollback_plan",
)

DATE_FIELDS = ("planned_date", "start_date", "end_date")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # columns hold naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _norm(value: Optional[str], valid: set, field: str) -> str:
    v = (value or "").strip().lower()
    if v not in valid:
        raise ValueError(f"Invalid {field} '{value}'. Must be one of {sorted(valid)}.")
    return v


def create_change(db: Session, data: Dict[str, Any], actor: Optional[str] = None) -> Change:
    """
    Create a change request and start its approval workflow.

    Auto-approved change types (policy, default: standard) skip the workflow.
    Everything else gets an approval chain from routing; routing errors roll
    back the whole submission.
    """
    change_type = _norm(data.get("change_type") or "normal", VALID_TYPES, "change_type")
    risk_level = _norm(data.get("risk_level") or "medium", VALID_RISK, "risk_level")
    priority = _norm(data.get("priority") or "medium", VALID_PRIORITY, "priority")

    requester = db.get(User, data["requested_by"])
    if not requester:
        raise ValueError(f"Requester {data['requested_by']} not found")
    product_id = data.get("product_id")
    if product_id is not None and not db.get(Product, product_id):
        raise ValueError(f"Product {product_id} not found")

    now = datetime.utcnow()
    change = Change(
        title=data["title"],
        description=data["description"],
        category=data["category"],
        priority=priority,
        product_id=product_id,
        risk_level=risk_level,
        change_type=change_type,
        requested_by=requester.id,
        planned_date=_naive_utc(data.get("planned_date")),
        start_date=_naive_utc(data.get("start_date")),
        end_date=_naive_utc(data.get("end_date")),
        rollback_plan=data.get("rollback_plan"),
        status=ChangeStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    db.add(change)
    db.flush()

    approvals = []
    if change_type in policy.auto_approve_types():
        change.status = ChangeStatus.APPROVED.value
        change.approved_by = AUTO_APPROVED_BY
        workflow = "auto"
    else:
        try:
            approvals = initialize_approvals(db, change, commit=False)
        except Exception:
            db.rollback()
            raise
        workflow = "chain" if approvals else "none"

    db.add(ChangeHistory(change_id=change.id, action="created", user_id=requester.id,
                         new_status=change.status, created_at=now))
    db.commit()
    db.refresh(change)

    changes_created_total.labels(change_type=change_type, workflow=workflow).inc()
    logger.info("[changes] change=%s created type=%s workflow=%s levels=%d",
                change.id, change_type, workflow, len(approvals))
    record_audit(db, "CHANGE_CREATED", "change", change.id, actor or requester.username,
                 {"change_type": change_type, "risk_level": risk_level, "product_id": product_id,
                  "workflow": workflow, "levels": len(approvals)})
    return change


def get_change(db: Session, change_id: int) -> Optional[Change]:
    return db.get(Change, change_id)


def list_changes(
    db: Session,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
    requested_by: Optional[int] = None,
    product_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Change]:
    q = db.query(Change)
    if status:
        q = q.filter(Change.status == status)
    if priority:
        q = q.filter(Change.priority == priority)
    if category:
        q = q.filter(Change.category == category)
    if requested_by is not None:
        q = q.filter(Change.requested_by == requested_by)
    if product_id is not None:
        q = q.filter(Change.product_id == product_id)
    return q.order_by(Change.created_at.desc(), Change.id.desc()).offset(skip).limit(limit).all()


def update_change(
    db: Session,
    change_id: int,
    updates: Dict[str, Any],
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Optional[Change]:
    """Manual edit with a history row; status moves are validated."""
    change = db.get(Change, change_id)
    if not change:
        return None

    fields = {k: v for k, v in updates.items() if k in EDITABLE and v is not None}
    for key in DATE_FIELDS:
        if key in fields:
            fields[key] = _naive_utc(fields[key])
    prev_status = change.status
    now = datetime.utcnow()

    if "status" in fields:
        fields["status"] = _norm(fields["status"], VALID_STATUS, "status")
        if fields["status"] == ChangeStatus.IN_PROGRESS.value and policy.block_early_implementation():
            start = fields.get("start_date") or change.start_date
            if start and now < start:
                raise ValueError(
                    f"Implementation cannot begin before the scheduled start time: {start.isoformat()}"
                )
    if "priority" in fields:
        fields["priority"] = _norm(fields["priority"], VALID_PRIORITY, "priority")

    for key, value in fields.items():
        setattr(change, key, value)
    change.updated_at = now

    status_moved = change.status != prev_status
    db.add(ChangeHistory(
        change_id=change.id,
        action="status_changed" if status_moved else "updated",
        user_id=user_id,
        notes=notes,
        previous_status=prev_status if status_moved else None,
        new_status=change.status if status_moved else None,
        created_at=now,
    ))
    db.commit()
    db.refresh(change)

    if status_moved:
        record_audit(db, "CHANGE_STATUS_CHANGED", "change", change.id, actor,
                     {"from": prev_status, "to": change.status, "notes": notes or ""})
    return change


def add_comment(db: Session, change_id: int, user_id: Optional[int], notes: str) -> ChangeHistory:
    if not db.get(Change, change_id):
        raise ValueError(f"Change {change_id} not found")
    h = ChangeHistory(change_id=change_id, action="comment_added", user_id=user_id, notes=notes)
    db.add(h); db.commit(); db.refresh(h)
    return h


def get_history(db: Session, change_id: int) -> List[ChangeHistory]:
    return (
        db.query(ChangeHistory)
        .filter(ChangeHistory.change_id == change_id)
        .order_by(ChangeHistory.created_at.asc(), ChangeHistory.id.asc())
        .all()
    )


def refresh_overdue(db: Session, now: Optional[datetime] = None) -> int:
    """Recompute is_overdue; returns how many changes are overdue afterwards."""
    now = now or datetime.utcnow()
    overdue = 0
    for c in db.query(Change).filter(Change.end_date != None).all():  # noqa: E711
        flag = c.end_date < now and c.status not in CLOSED_STATUSES
        if c.is_overdue != flag:
            c.is_overdue = flag
        overdue += int(flag)
    db.commit()
    return overdue
