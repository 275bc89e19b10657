"""Outbound change notifications.

Posts a JSON event to the configured webhook (mail relay, chat bridge, ...).
Delivery is fire-and-forget: failures are logged and counted, never raised
into the request that triggered them.
"""
from __future__ import annotations
import os, logging
from typing import Any, Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from app.crud.approval import ApprovalResult, pending_at_level
from app.metrics import notifications_total
from app.models.change import Change
from app.models.user import User
from app.utils.runtime_config import get_notify_webhook, notify_enabled

logger = logging.getLogger(__name__)

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")
NOTIFY_TIMEOUT_SEC = float(os.getenv("NOTIFY_TIMEOUT_SEC", "10"))

APPROVAL_REQUIRED = "approval_required"
CHANGE_APPROVED = "change_approved"
CHANGE_REJECTED = "change_rejected"

_SUBJECTS = {
    APPROVAL_REQUIRED: "Change Approval Required: #{id} - {title}",
    CHANGE_APPROVED: "Change Approved: #{id} - {title}",
    CHANGE_REJECTED: "Change Rejected: #{id} - {title}",
}


def _change_link(change: Change, with_token: bool) -> str:
    url = f"{APP_BASE_URL}/changes/{change.id}"
    if with_token and change.approval_token:
        url += f"?token={change.approval_token}"
    return url


def build_payload(recipient: User, change: Change, event_kind: str) -> Dict[str, Any]:
    subject = _SUBJECTS[event_kind].format(id=change.id, title=change.title)
    return {
        "event": event_kind,
        "text": subject,
        "recipient": {"id": recipient.id, "name": recipient.name, "email": recipient.email},
        "change": {
            "id": change.id,
            "title": change.title,
            "status": change.status,
            "priority": change.priority,
            "risk_level": change.risk_level,
            "change_type": change.change_type,
        },
        "link": _change_link(change, with_token=event_kind == APPROVAL_REQUIRED),
    }


def notify(recipient: Optional[User], change: Change, event_kind: str) -> str:
    """Send one event; returns 'sent', 'skipped' or 'failed'."""
    if event_kind not in _SUBJECTS:
        raise ValueError(f"Unknown notification event '{event_kind}'")

    url = get_notify_webhook()
    if recipient is None or not notify_enabled() or not url:
        logger.debug("[notify] skipped %s for change=%s", event_kind, change.id)
        notifications_total.labels(event=event_kind, outcome="skipped").inc()
        return "skipped"

    payload = build_payload(recipient, change, event_kind)
    try:
        r = requests.post(url, json=payload, timeout=NOTIFY_TIMEOUT_SEC)
    except requests.RequestException as e:
        logger.warning("[notify] %s for change=%s failed: %s", event_kind, change.id, e)
        notifications_total.labels(event=event_kind, outcome="failed").inc()
        return "failed"

    if r.status_code >= 300:
        logger.warning("[notify] %s for change=%s got HTTP %s: %s",
                       event_kind, change.id, r.status_code, r.text[:300])
        notifications_total.labels(event=event_kind, outcome="failed").inc()
        return "failed"

    logger.info("[notify] %s sent to user=%s for change=%s", event_kind, recipient.id, change.id)
    notifications_total.labels(event=event_kind, outcome="sent").inc()
    return "sent"


def _notify_level(db: Session, change: Change, level: int) -> List[str]:
    out = []
    for row in pending_at_level(db, change.id, level):
        out.append(notify(db.get(User, row.approver_id), change, APPROVAL_REQUIRED))
    return out


def notify_first_level(db: Session, change: Change) -> List[str]:
    """After submission: ask the level-1 approver(s) for a decision."""
    return _notify_level(db, change, 1)


def notify_decision(db: Session, change: Change, result: ApprovalResult) -> List[str]:
    """
    Route a decision result: a finished workflow goes back to the requester,
    an unfinished one goes to whoever holds the next level.
    """
    if result.completed:
        kind = CHANGE_APPROVED if result.approved else CHANGE_REJECTED
        return [notify(db.get(User, change.requested_by), change, kind)]
    if result.next_level is not None:
        return _notify_level(db, change, result.next_level)
    return []
