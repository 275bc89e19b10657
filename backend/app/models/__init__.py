from .user import User
from .product import Product
from .change import Change, ChangeHistory, ChangeStatus, ChangeType, RiskLevel
from .approval import ApprovalRouting, ChangeApproval, ApprovalStatus
from .audit import AuditLog
