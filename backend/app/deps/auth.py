import jwt
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from typing import Callable
from app.core.security import decode_token, ROLES

class CurrentUser(BaseModel):
    username: str
    role: str

    def at_least(self, role: str) -> bool:
        # unknown roles rank below viewer
        rank = ROLES.index(self.role) if self.role in ROLES else -1
        return rank >= ROLES.index(role)

def get_current_user(authorization: str | None = Header(default=None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        data = decode_token(token, expected_type="access")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid/expired token")
    return CurrentUser(username=data.get("sub", "unknown"), role=data.get("role", "viewer"))

def require_role(*allowed: str) -> Callable:
    """Exact role membership, e.g. require_role("approver", "admin")."""
    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if allowed and user.role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return checker

def require_min_role(role: str) -> Callable:
    """Role at or above `role` in viewer < agent < approver < admin."""
    if role not in ROLES:
        raise ValueError(f"unknown role '{role}'")
    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not user.at_least(role):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return checker
