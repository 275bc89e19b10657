from datetime import datetime
from typing import List, Literal, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crud.approval import list_change_approvals, record_approval_decision
from app.crud.change import get_change
from app.crud.directory import user_crud
from app.deps.auth import CurrentUser, require_min_role, require_role
from app.metrics import refresh_pending_gauge
from app.services.notifier import notify_decision

router = APIRouter()


class ApprovalOut(BaseModel):
    id: int
    change_id: int
    approver_id: int
    approval_level: int
    status: str
    approved_at: Optional[datetime] = None
    comments: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


# The body is tagged by `action`; each variant is validated before the engine sees it.
class _DecisionBase(BaseModel):
    approver_id: int = Field(alias="approverId", gt=0)
    comments: Optional[str] = Field(default=None, max_length=4000)
    model_config = ConfigDict(populate_by_name=True)

class ApproveAction(_DecisionBase):
    action: Literal["approved"]

class RejectAction(_DecisionBase):
    action: Literal["rejected"]


class DecisionOut(BaseModel):
    completed: bool
    approved: bool
    nextLevel: Optional[int] = None


@router.get("/api/changes/{change_id}/approvals", response_model=List[ApprovalOut])
def api_list_change_approvals(change_id: int, db: Session = Depends(get_db),
                              user=Depends(require_min_role("viewer"))):
    if not get_change(db, change_id):
        raise HTTPException(status_code=404, detail="Change not found")
    return [ApprovalOut.model_validate(r) for r in list_change_approvals(db, change_id)]


@router.post("/api/changes/{change_id}/approve", response_model=DecisionOut, response_model_exclude_none=True)
def api_decide_change(change_id: int, payload: Union[ApproveAction, RejectAction],
                      db: Session = Depends(get_db),
                      user: CurrentUser = Depends(require_role("approver", "admin"))):
    # approvers may only decide for themselves; admins may act for anyone
    if user.role != "admin":
        me = user_crud.get_by_username(db, user.username)
        if not me or me.id != payload.approver_id:
            raise HTTPException(status_code=403, detail="Approvers can only record their own decisions")

    result = record_approval_decision(
        db, change_id, payload.approver_id, payload.action, payload.comments, actor=user.username,
    )
    change = get_change(db, change_id)
    notify_decision(db, change, result)
    refresh_pending_gauge(db)
    return result.as_response()
