from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey, UniqueConstraint
from datetime import datetime
import enum

from app.core.database import Base

class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"

class ApprovalRouting(Base):
    """Admin-maintained chain of approvers per product and risk level."""
    __tablename__ = "approval_routing"
    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    risk_level = Column(String(16), nullable=False)      # low | medium | high
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approval_level = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

class ChangeApproval(Base):
    """One required decision at one level of a change's approval chain."""
    __tablename__ = "change_approvals"
    __table_args__ = (
        UniqueConstraint("change_id", "approval_level", name="uq_change_approvals_change_level"),
    )
    id = Column(Integer, primary_key=True)
    change_id = Column(Integer, ForeignKey("changes.id"), nullable=False, index=True)
    approver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    approval_level = Column(Integer, nullable=False)
    status = Column(String(16), default=ApprovalStatus.PENDING.value, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    comments = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
