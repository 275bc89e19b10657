# app/crud/approval.py
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.errors import AlreadyDecided, InvalidRouting, NotFound, OutOfSequence, WorkflowError
from app.metrics import approval_decisions_total, approval_outcomes_total, workflow_conflicts_total
from app.models.approval import ApprovalRouting, ApprovalStatus, ChangeApproval
from app.models.change import Change, ChangeStatus
from app.models.user import User
from app.services.audit import record_audit
from app.utils import policy

logger = logging.getLogger(__name__)

VALID_DECISIONS = {ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value}
PENDING = ApprovalStatus.PENDING.value


@dataclass
class ApprovalResult:
    """Outcome of one decision; the caller uses it to pick who to notify."""
    change_id: int
    level: int
    decision: str
    completed: bool
    approved: bool
    next_level: Optional[int] = None

    def as_response(self) -> Dict[str, object]:
        out: Dict[str, object] = {"completed": self.completed, "approved": self.approved}
        if self.next_level is not None:
            out["nextLevel"] = self.next_level
        return out


def _conflict(exc: WorkflowError) -> WorkflowError:
    workflow_conflicts_total.labels(kind=exc.kind).inc()
    return exc


def matching_routing(db: Session, product_id: int, risk_level: str) -> List[ApprovalRouting]:
    return (
        db.query(ApprovalRouting)
        .filter(
            ApprovalRouting.product_id == product_id,
            ApprovalRouting.risk_level == risk_level,
            ApprovalRouting.is_active == True,  # noqa: E712
        )
        .order_by(ApprovalRouting.approval_level.asc(), ApprovalRouting.id.asc())
        .all()
    )


def initialize_approvals(db: Session, change: Change, commit: bool = True) -> List[ChangeApproval]:
    """
    Build the approval chain for a submitted change from its routing.

    One pending row per active routing row for (product, risk level). No
    routing means no rows: the change stays outside the workflow. Routing with
    duplicate or missing levels raises InvalidRouting and creates nothing.
    Change.status is not touched here.
    """
    if change.product_id is None or not change.risk_level:
        return []

    existing = db.query(ChangeApproval).filter(ChangeApproval.change_id == change.id).count()
    if existing:
        raise ValueError(f"Change {change.id} already has an approval chain")

    routes = matching_routing(db, change.product_id, change.risk_level)
    if not routes:
        logger.info("[approvals] change=%s: no routing for product=%s risk=%s",
                    change.id, change.product_id, change.risk_level)
        return []

    levels = [r.approval_level for r in routes]
    if levels != list(range(1, len(levels) + 1)):
        raise _conflict(InvalidRouting(change.product_id, change.risk_level, levels))

    now = datetime.utcnow()
    rows = [
        ChangeApproval(
            change_id=change.id,
            approver_id=r.approver_id,
            approval_level=r.approval_level,
            status=PENDING,
            created_at=now,
            updated_at=now,
        )
        for r in routes
    ]
    db.add_all(rows)
    change.approval_token = secrets.token_urlsafe(24)
    change.updated_at = now

    if commit:
        db.commit()
        for r in rows:
            db.refresh(r)
    else:
        db.flush()

    logger.info("[approvals] change=%s: chain of %d level(s) created", change.id, len(rows))
    return rows


def list_change_approvals(db: Session, change_id: int) -> List[ChangeApproval]:
    return (
        db.query(ChangeApproval)
        .filter(ChangeApproval.change_id == change_id)
        .order_by(ChangeApproval.approval_level.asc())
        .all()
    )


def pending_at_level(db: Session, change_id: int, level: int) -> List[ChangeApproval]:
    return (
        db.query(ChangeApproval)
        .filter(
            ChangeApproval.change_id == change_id,
            ChangeApproval.approval_level == level,
            ChangeApproval.status == PENDING,
        )
        .all()
    )


def _lock_change(db: Session, change_id: int) -> Optional[Change]:
    """SELECT ... FOR UPDATE on the change row (a no-op on SQLite)."""
    return (
        db.query(Change)
        .filter(Change.id == change_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _claim_approval(db: Session, approval_id: int, decision: str, comments: Optional[str], now: datetime) -> bool:
    """Conditional update: only a row that is still pending can be decided."""
    updated = (
        db.query(ChangeApproval)
        .filter(ChangeApproval.id == approval_id, ChangeApproval.status == PENDING)
        .update(
            {
                ChangeApproval.status: decision,
                ChangeApproval.approved_at: now,
                ChangeApproval.comments: comments,
                ChangeApproval.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def record_approval_decision(
    db: Session,
    change_id: int,
    approver_id: int,
    action: str,
    comments: Optional[str] = None,
    actor: Optional[str] = None,
) -> ApprovalResult:
    """Record one approver's decision and advance the change's approval state."""
    d = (action or "").strip().lower()
    if d not in VALID_DECISIONS:
        raise ValueError(f"Invalid action '{action}'. Must be one of {sorted(VALID_DECISIONS)}.")

    # Row lock on the change serializes decisions on it, so the
    # all-approved count below sees every other committed decision.
    change = _lock_change(db, change_id)
    if not change:
        raise _conflict(NotFound(f"Change {change_id} not found"))

    # Terminal rejection: later rows may still read pending but are dead
    if change.status == ChangeStatus.REJECTED.value:
        db.rollback()
        raise _conflict(AlreadyDecided(f"Change {change_id} has already been rejected"))

    row = (
        db.query(ChangeApproval)
        .filter(
            ChangeApproval.change_id == change_id,
            ChangeApproval.approver_id == approver_id,
            ChangeApproval.status == PENDING,
        )
        .order_by(ChangeApproval.approval_level.asc())
        .first()
    )
    if not row:
        db.rollback()
        raise _conflict(NotFound(f"No pending approval for approver {approver_id} on change {change_id}"))

    level = row.approval_level
    approval_id = row.id

    if policy.strict_sequence():
        blocking = (
            db.query(ChangeApproval)
            .filter(
                ChangeApproval.change_id == change_id,
                ChangeApproval.status == PENDING,
                ChangeApproval.approval_level < level,
            )
            .order_by(ChangeApproval.approval_level.asc())
            .first()
        )
        if blocking:
            db.rollback()
            raise _conflict(OutOfSequence(change_id, level, blocking.approval_level))

    now = datetime.utcnow()
    if not _claim_approval(db, approval_id, d, comments, now):
        db.rollback()
        raise _conflict(AlreadyDecided(f"Approval {approval_id} on change {change_id} was already decided"))

    approval_decisions_total.labels(decision=d).inc()

    if d == ApprovalStatus.REJECTED.value:
        change.status = ChangeStatus.REJECTED.value
        change.updated_at = now
        skipped = 0
        if policy.skip_pending_on_reject():
            skipped = (
                db.query(ChangeApproval)
                .filter(ChangeApproval.change_id == change_id, ChangeApproval.status == PENDING)
                .update(
                    {ChangeApproval.status: ApprovalStatus.SKIPPED.value, ChangeApproval.updated_at: now},
                    synchronize_session=False,
                )
            )
        db.commit()
        approval_outcomes_total.labels(outcome="rejected").inc()
        logger.info("[approvals] change=%s rejected at level %s by approver=%s", change_id, level, approver_id)
        record_audit(db, "CHANGE_REJECTED", "change", change_id, actor or str(approver_id),
                     {"approval_id": approval_id, "level": level, "comments": comments or "", "skipped": skipped})
        return ApprovalResult(change_id, level, d, completed=True, approved=False)

    outstanding = (
        db.query(ChangeApproval)
        .filter(ChangeApproval.change_id == change_id, ChangeApproval.status != ApprovalStatus.APPROVED.value)
        .count()
    )

    if outstanding == 0:
        approver = db.get(User, approver_id)
        change.status = ChangeStatus.APPROVED.value
        change.approved_by = approver.name if approver else str(approver_id)
        change.updated_at = now
        db.commit()
        approval_outcomes_total.labels(outcome="approved").inc()
        logger.info("[approvals] change=%s fully approved (last level %s)", change_id, level)
        record_audit(db, "CHANGE_APPROVED", "change", change_id, actor or str(approver_id),
                     {"approval_id": approval_id, "level": level, "comments": comments or ""})
        return ApprovalResult(change_id, level, d, completed=True, approved=True)

    nxt = (
        db.query(ChangeApproval)
        .filter(
            ChangeApproval.change_id == change_id,
            ChangeApproval.status == PENDING,
            ChangeApproval.approval_level > level,
        )
        .order_by(ChangeApproval.approval_level.asc())
        .first()
    )
    next_level = nxt.approval_level if nxt else None
    change.updated_at = now
    db.commit()

    logger.info("[approvals] change=%s level %s approved; next=%s", change_id, level, next_level)
    record_audit(db, "APPROVAL_DECIDED", "change", change_id, actor or str(approver_id),
                 {"approval_id": approval_id, "level": level, "decision": d,
                  "comments": comments or "", "next_level": next_level})
    return ApprovalResult(change_id, level, d, completed=False, approved=False, next_level=next_level)
