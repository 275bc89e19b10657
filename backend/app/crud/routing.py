from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session

from app.models.approval import ApprovalRouting
from app.models.change import RiskLevel
from app.models.product import Product
from app.models.user import User
from app.utils.policy import routing_seed

logger = logging.getLogger(__name__)

VALID_RISK = {r.value for r in RiskLevel}

def _check_refs(db: Session, product_id: Optional[int], approver_id: Optional[int],
                risk_level: Optional[str], approval_level: Optional[int]) -> None:
    if product_id is not None and not db.get(Product, product_id):
        raise ValueError(f"Product {product_id} not found")
    if approver_id is not None and not db.get(User, approver_id):
        raise ValueError(f"Approver {approver_id} not found")
    if risk_level is not None and risk_level not in VALID_RISK:
        raise ValueError(f"Invalid risk level '{risk_level}'. Must be one of {sorted(VALID_RISK)}.")
    if approval_level is not None and approval_level < 1:
        raise ValueError("approval_level must be >= 1")

def create_routing(
    db: Session,
    product_id: int,
    risk_level: str,
    approver_id: int,
    approval_level: int,
    is_active: bool = True,
) -> ApprovalRouting:
    risk_level = (risk_level or "").strip().lower()
    _check_refs(db, product_id, approver_id, risk_level, approval_level)
    r = ApprovalRouting(
        product_id=product_id, risk_level=risk_level, approver_id=approver_id,
        approval_level=approval_level, is_active=is_active,
    )
    db.add(r); db.commit(); db.refresh(r)
    return r

def update_routing(db: Session, routing_id: int, updates: dict) -> Optional[ApprovalRouting]:
    """Existing change approval rows are never rewritten by routing edits."""
    r = db.get(ApprovalRouting, routing_id)
    if not r:
        return None
    if "risk_level" in updates and updates["risk_level"] is not None:
        updates = {**updates, "risk_level": str(updates["risk_level"]).strip().lower()}
    _check_refs(db, updates.get("product_id"), updates.get("approver_id"),
                updates.get("risk_level"), updates.get("approval_level"))
    for key in ("product_id", "risk_level", "approver_id", "approval_level", "is_active"):
        if key in updates and updates[key] is not None:
            setattr(r, key, updates[key])
    r.updated_at = datetime.utcnow()
    db.commit(); db.refresh(r)
    return r

def delete_routing(db: Session, routing_id: int) -> bool:
    r = db.get(ApprovalRouting, routing_id)
    if not r:
        return False
    db.delete(r); db.commit()
    return True

def list_routing(db: Session, product_id: Optional[int] = None, risk_level: Optional[str] = None,
                 active_only: bool = False) -> List[ApprovalRouting]:
    q = db.query(ApprovalRouting)
    if product_id is not None:
        q = q.filter(ApprovalRouting.product_id == product_id)
    if risk_level:
        q = q.filter(ApprovalRouting.risk_level == risk_level.lower())
    if active_only:
        q = q.filter(ApprovalRouting.is_active == True)  # noqa: E712
    return q.order_by(
        ApprovalRouting.product_id.asc(),
        ApprovalRouting.risk_level.asc(),
        ApprovalRouting.approval_level.asc(),
    ).all()

def seed_routing(db: Session) -> int:
    """Load `routing_seed` from the policy file into an empty routing table."""
    if db.query(ApprovalRouting).count():
        return 0
    created = 0
    for entry in routing_seed():
        product = db.query(Product).filter(Product.name == entry.get("product")).first()
        if not product:
            logger.warning("[routing] seed skipped: unknown product %r", entry.get("product"))
            continue
        risk = str(entry.get("risk_level", "")).lower()
        if risk not in VALID_RISK:
            logger.warning("[routing] seed skipped: bad risk level %r for %s", risk, product.name)
            continue
        # a partial chain would leave a gap in the levels, so all or nothing
        usernames = entry.get("levels") or []
        users = [db.query(User).filter(User.username == u).first() for u in usernames]
        missing = [u for u, user in zip(usernames, users) if not user]
        if missing:
            logger.warning("[routing] seed skipped %s/%s: unknown approver(s) %s",
                           product.name, risk, ", ".join(map(repr, missing)))
            continue
        for level, user in enumerate(users, start=1):
            db.add(ApprovalRouting(product_id=product.id, risk_level=risk,
                                   approver_id=user.id, approval_level=level))
            created += 1
    db.commit()
    return created
