from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.orm import Session
from sqlalchemy import text, inspect
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime
import logging, os, uvicorn

# Import our modules
from app.core.database import get_db, engine, Base, SessionLocal
from app.core.errors import WorkflowError
from app.core.security import create_access_token, create_refresh_token, decode_token, ACCESS_TTL_MIN, ROLES
from app.deps.auth import require_role, require_min_role, CurrentUser
from app.models.audit import AuditLog
from app.crud.directory import user_crud, product_crud
from app.crud.routing import create_routing, update_routing, delete_routing, list_routing, seed_routing
from app.crud.change import create_change, get_change, list_changes, update_change, add_comment, get_history, refresh_overdue
from app.services.audit import record_audit
from app.services.notifier import notify_first_level
from app.utils.runtime_config import set_notify_webhook, get_notify_webhook, set_notify_enabled, notify_enabled
from app.utils.policy import get_policy, reload_policy, POLICY_PATH
from app.utils.audit_sink import list_audit_files, AUDIT_DIR
from app.metrics import init_metrics_zero, refresh_pending_gauge
from app.api.approvals import router as approvals_router

APP_VERSION = "0.3.0"

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("servicedesk")

# FastAPI app
app = FastAPI(
    title="IT Service Desk API",
    description="Change requests with multilevel approval workflow",
    version=APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)

app.include_router(approvals_router)

@app.on_event("startup")
def on_startup():
    logger.info("[startup] database=%s (%s)", engine.url.render_as_string(hide_password=True), engine.name)
    Base.metadata.create_all(bind=engine)
    logger.info("[startup] tables: %s", inspect(engine).get_table_names())
    logger.info("[startup] policy=%s audit_dir=%s", POLICY_PATH, AUDIT_DIR)
    init_metrics_zero()
    db = SessionLocal()
    try:
        seeded = seed_routing(db)
        if seeded:
            logger.info("[startup] seeded %d approval routing row(s)", seeded)
        refresh_pending_gauge(db)
    finally:
        db.close()

# Error mapping
@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "error": "invalid"})

# Pydantic models
class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "agent"

class UserOut(BaseModel):
    id: int
    username: str
    name: str
    email: Optional[str]
    role: str
    is_active: bool
    model_config = ConfigDict(from_attributes=True)

class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    category: Optional[str] = None
    description: Optional[str] = None
    owner: Optional[str] = None

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    owner: Optional[str] = None
    is_active: Optional[bool] = None

class ProductOut(BaseModel):
    id: int
    name: str
    category: Optional[str]
    description: Optional[str]
    owner: Optional[str]
    is_active: bool
    model_config = ConfigDict(from_attributes=True)

class RoutingIn(BaseModel):
    product_id: int
    risk_level: str
    approver_id: int
    approval_level: int = Field(ge=1)
    is_active: bool = True

class RoutingUpdate(BaseModel):
    product_id: Optional[int] = None
    risk_level: Optional[str] = None
    approver_id: Optional[int] = None
    approval_level: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None

class RoutingOut(BaseModel):
    id: int
    product_id: int
    risk_level: str
    approver_id: int
    approval_level: int
    is_active: bool
    model_config = ConfigDict(from_attributes=True)

class ChangeCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str
    category: str
    priority: str = "medium"
    product_id: Optional[int] = None
    risk_level: str = "medium"
    change_type: str = "normal"
    requested_by: int
    planned_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    rollback_plan: Optional[str] = None

class ChangeUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    planned_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    rollback_plan: Optional[str] = None
    user_id: Optional[int] = None
    notes: Optional[str] = None

class ChangeOut(BaseModel):
    id: int
    title: str
    description: str
    status: str
    priority: str
    category: str
    product_id: Optional[int]
    risk_level: str
    change_type: str
    requested_by: int
    approved_by: Optional[str]
    planned_date: Optional[datetime]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    rollback_plan: Optional[str]
    is_overdue: bool
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)

class CommentIn(BaseModel):
    notes: str = Field(min_length=1)
    user_id: Optional[int] = None

class HistoryOut(BaseModel):
    id: int
    change_id: int
    action: str
    user_id: Optional[int]
    notes: Optional[str]
    previous_status: Optional[str]
    new_status: Optional[str]
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class AuditEntry(BaseModel):
    id: int
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    actor: Optional[str]
    details: dict
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class WebhookIn(BaseModel):
    url: Optional[str] = None
    enabled: Optional[bool] = None

class LoginIn(BaseModel):
    username: str
    role: str

class RefreshIn(BaseModel):
    refresh_token: str

# ---------------------------------------------------------------- health

@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected",
            "tables": inspect(engine).get_table_names(),
            "timestamp": datetime.now(),
        }
    except Exception as e:
        logger.error("[health] database check failed: %s", e)
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
            "timestamp": datetime.now(),
        }

@app.get("/public/healthz", include_in_schema=False)
def public_healthz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception:
        return Response(content='{"status":"error"}', media_type="application/json", status_code=503)

@app.get("/public/version", include_in_schema=False)
def public_version():
    return {"name": "servicedesk-api", "version": APP_VERSION}

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

# ---------------------------------------------------------------- auth

@app.post("/auth/login")
def auth_login(body: LoginIn, db: Session = Depends(get_db)):
    role = body.role.lower()
    if role not in ROLES:
        raise HTTPException(400, f"role must be {'|'.join(ROLES)}")
    # No credential check here: a registered user always gets the stored
    # role, an unregistered name gets the requested one (dev/bootstrap login).
    known = user_crud.get_by_username(db, body.username)
    if known:
        if not known.is_active:
            raise HTTPException(status_code=403, detail="User is inactive")
        role = known.role
    access = create_access_token(body.username, role)
    refresh = create_refresh_token(body.username, role)
    return {"access_token": access, "refresh_token": refresh, "token_type": "bearer", "expires_in": ACCESS_TTL_MIN * 60, "role": role, "username": body.username}

@app.post("/auth/refresh")
def auth_refresh(body: RefreshIn):
    try:
        data = decode_token(body.refresh_token, expected_type="refresh")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid/expired refresh token")
    new_access = create_access_token(data["sub"], data.get("role", "viewer"))
    return {"access_token": new_access, "token_type": "bearer", "expires_in": ACCESS_TTL_MIN * 60}

# ---------------------------------------------------------------- users & products

@app.get("/api/users", response_model=List[UserOut])
def api_list_users(skip: int = 0, limit: int = 100, db: Session = Depends(get_db),
                   user=Depends(require_min_role("viewer"))):
    return [UserOut.model_validate(u) for u in user_crud.get_users(db, skip=skip, limit=limit)]

@app.post("/api/users", response_model=UserOut, status_code=201)
def api_create_user(body: UserCreate, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    u = user_crud.create_user(db, body.model_dump())
    record_audit(db, "USER_CREATED", "user", u.id, user.username, {"username": u.username, "role": u.role})
    return UserOut.model_validate(u)

@app.get("/api/products", response_model=List[ProductOut])
def api_list_products(active_only: bool = False, db: Session = Depends(get_db),
                      user=Depends(require_min_role("viewer"))):
    return [ProductOut.model_validate(p) for p in product_crud.get_products(db, active_only=active_only)]

@app.post("/api/products", response_model=ProductOut, status_code=201)
def api_create_product(body: ProductCreate, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    p = product_crud.create_product(db, body.model_dump())
    record_audit(db, "PRODUCT_CREATED", "product", p.id, user.username, {"name": p.name})
    return ProductOut.model_validate(p)

@app.patch("/api/products/{product_id}", response_model=ProductOut)
def api_update_product(product_id: int, body: ProductUpdate, db: Session = Depends(get_db),
                       user=Depends(require_role("admin"))):
    p = product_crud.update_product(db, product_id, body.model_dump(exclude_unset=True))
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return ProductOut.model_validate(p)

# ---------------------------------------------------------------- approval routing

@app.get("/api/approval-routing", response_model=List[RoutingOut])
def api_list_routing(product_id: Optional[int] = None, risk_level: Optional[str] = None,
                     active_only: bool = False, db: Session = Depends(get_db),
                     user=Depends(require_min_role("viewer"))):
    rows = list_routing(db, product_id=product_id, risk_level=risk_level, active_only=active_only)
    return [RoutingOut.model_validate(r) for r in rows]

@app.post("/api/approval-routing", response_model=RoutingOut, status_code=201)
def api_create_routing(body: RoutingIn, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    r = create_routing(db, body.product_id, body.risk_level, body.approver_id, body.approval_level, body.is_active)
    record_audit(db, "ROUTING_CREATED", "approval_routing", r.id, user.username, body.model_dump())
    return RoutingOut.model_validate(r)

@app.patch("/api/approval-routing/{routing_id}", response_model=RoutingOut)
def api_update_routing(routing_id: int, body: RoutingUpdate, db: Session = Depends(get_db),
                       user=Depends(require_role("admin"))):
    updates = body.model_dump(exclude_unset=True)
    r = update_routing(db, routing_id, updates)
    if not r:
        raise HTTPException(status_code=404, detail="Approval routing not found")
    record_audit(db, "ROUTING_UPDATED", "approval_routing", r.id, user.username, updates)
    return RoutingOut.model_validate(r)

@app.delete("/api/approval-routing/{routing_id}", response_model=dict)
def api_delete_routing(routing_id: int, db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    if not delete_routing(db, routing_id):
        raise HTTPException(status_code=404, detail="Approval routing not found")
    record_audit(db, "ROUTING_DELETED", "approval_routing", routing_id, user.username, {})
    return {"success": True}

# ---------------------------------------------------------------- changes

@app.get("/api/changes", response_model=List[ChangeOut])
def api_list_changes(status: Optional[str] = None, priority: Optional[str] = None,
                     category: Optional[str] = None, requested_by: Optional[int] = None,
                     product_id: Optional[int] = None, skip: int = 0, limit: int = 100,
                     db: Session = Depends(get_db), user=Depends(require_min_role("viewer"))):
    rows = list_changes(db, status=status, priority=priority, category=category,
                        requested_by=requested_by, product_id=product_id, skip=skip, limit=limit)
    return [ChangeOut.model_validate(c) for c in rows]

@app.post("/api/changes", response_model=ChangeOut, status_code=201)
def api_create_change(body: ChangeCreate, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(require_min_role("agent"))):
    change = create_change(db, body.model_dump(), actor=user.username)
    notify_first_level(db, change)
    refresh_pending_gauge(db)
    return ChangeOut.model_validate(change)

# registered before /{change_id} so the literal path wins
@app.post("/api/changes/refresh-overdue", response_model=dict)
def api_refresh_overdue(db: Session = Depends(get_db), user=Depends(require_role("admin"))):
    return {"overdue": refresh_overdue(db)}

@app.get("/api/changes/{change_id}", response_model=ChangeOut)
def api_get_change(change_id: int, db: Session = Depends(get_db), user=Depends(require_min_role("viewer"))):
    change = get_change(db, change_id)
    if not change:
        raise HTTPException(status_code=404, detail="Change not found")
    return ChangeOut.model_validate(change)

@app.patch("/api/changes/{change_id}", response_model=ChangeOut)
def api_update_change(change_id: int, body: ChangeUpdate, db: Session = Depends(get_db),
                      user: CurrentUser = Depends(require_min_role("agent"))):
    data = body.model_dump(exclude_unset=True)
    user_id = data.pop("user_id", None)
    notes = data.pop("notes", None)
    change = update_change(db, change_id, data, user_id=user_id, notes=notes, actor=user.username)
    if not change:
        raise HTTPException(status_code=404, detail="Change not found")
    return ChangeOut.model_validate(change)

@app.get("/api/changes/{change_id}/history", response_model=List[HistoryOut])
def api_change_history(change_id: int, db: Session = Depends(get_db), user=Depends(require_min_role("viewer"))):
    if not get_change(db, change_id):
        raise HTTPException(status_code=404, detail="Change not found")
    return [HistoryOut.model_validate(h) for h in get_history(db, change_id)]

@app.post("/api/changes/{change_id}/comments", response_model=HistoryOut, status_code=201)
def api_add_comment(change_id: int, body: CommentIn, db: Session = Depends(get_db),
                    user=Depends(require_min_role("agent"))):
    if not get_change(db, change_id):
        raise HTTPException(status_code=404, detail="Change not found")
    return HistoryOut.model_validate(add_comment(db, change_id, body.user_id, body.notes))

# ---------------------------------------------------------------- audit, policy, config

@app.get("/api/audit", response_model=List[AuditEntry])
def api_audit(entity_type: Optional[str] = None, entity_id: Optional[int] = None, limit: int = 50,
              db: Session = Depends(get_db), user=Depends(require_role("approver", "admin"))):
    q = db.query(AuditLog)
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(AuditLog.entity_id == entity_id)
    rows = q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return [AuditEntry.model_validate(r) for r in rows]

@app.get("/api/audit-files", response_model=List[dict])
def api_audit_files(user=Depends(require_role("approver", "admin"))):
    return list_audit_files()

@app.get("/api/policy", response_model=dict)
def api_policy(user=Depends(require_min_role("viewer"))):
    return {"path": str(POLICY_PATH), "policy": get_policy()}

@app.post("/api/policy/reload", response_model=dict)
def api_policy_reload(user=Depends(require_role("admin"))):
    pol = reload_policy()
    logger.info("[policy] reloaded from %s by %s", POLICY_PATH, user.username)
    return {"reloaded": True, "policy": pol}

@app.post("/config/notification-webhook", response_model=dict)
def api_set_notification_webhook(body: WebhookIn, user=Depends(require_role("admin"))):
    if body.url is not None:
        set_notify_webhook(body.url)
    if body.enabled is not None:
        set_notify_enabled(body.enabled)
    return {"saved": True, "configured": bool(get_notify_webhook()), "enabled": notify_enabled()}

@app.get("/config/notification-webhook", response_model=dict)
def api_get_notification_webhook(user=Depends(require_role("admin"))):
    url = get_notify_webhook()
    return {"configured": bool(url), "url": url, "enabled": notify_enabled()}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
