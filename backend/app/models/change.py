from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey
from datetime import datetime
import enum

from app.core.database import Base

class ChangeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLBACK = "rollback"

class ChangeType(str, enum.Enum):
    STANDARD = "standard"
    NORMAL = "normal"
    EMERGENCY = "emergency"

class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

# statuses after which a change can no longer be overdue
CLOSED_STATUSES = {
    ChangeStatus.REJECTED.value,
    ChangeStatus.COMPLETED.value,
    ChangeStatus.FAILED.value,
    ChangeStatus.ROLLBACK.value,
}

class Change(Base):
    __tablename__ = "changes"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(32), default=ChangeStatus.PENDING.value, nullable=False, index=True)
    priority = Column(String(32), default="medium", nullable=False)
    category = Column(String(128), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True, index=True)
    risk_level = Column(String(16), default=RiskLevel.MEDIUM.value, nullable=False)
    change_type = Column(String(16), default=ChangeType.NORMAL.value, nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    approved_by = Column(String(255), nullable=True)
    planned_date = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    rollback_plan = Column(Text, nullable=True)
    approval_token = Column(String(64), nullable=True, unique=True)
    is_overdue = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

class ChangeHistory(Base):
    __tablename__ = "change_history"
    id = Column(Integer, primary_key=True)
    change_id = Column(Integer, ForeignKey("changes.id"), nullable=False, index=True)
    action = Column(String(64), nullable=False)          # created | updated | status_changed | comment_added
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    notes = Column(Text, nullable=True)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
