from __future__ import annotations
from typing import Optional, Dict, Any
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.utils.audit_sink import write_event

def record_audit(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    actor: Optional[str],
    details: Dict[str, Any],
) -> AuditLog:
    """
    Persist audit to DB and mirror to filesystem as JSONL.

    Commits the session, so call it after the change it describes has been
    committed (or as part of that commit).
    """
    row = AuditLog(action=action, entity_type=entity_type, entity_id=entity_id, actor=actor, details=details)
    db.add(row)
    db.commit()
    db.refresh(row)

    write_event({
        "id": row.id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "actor": row.actor,
        "details": row.details or {},
        "created_at": row.created_at.isoformat() if row.created_at else datetime.utcnow().isoformat(),
    })
    return row
