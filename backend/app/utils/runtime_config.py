import os
from threading import RLock

_lock = RLock()
_state = {
    # seed from environment on boot; admins can override at runtime
    "NOTIFY_WEBHOOK_URL": os.getenv("NOTIFY_WEBHOOK_URL", "").strip(),
    "NOTIFY_ENABLED": os.getenv("NOTIFY_ENABLED", "1") == "1",
}

def set_notify_webhook(url: str | None) -> None:
    with _lock:
        _state["NOTIFY_WEBHOOK_URL"] = (url or "").strip()

def get_notify_webhook() -> str:
    with _lock:
        return _state.get("NOTIFY_WEBHOOK_URL", "")

def set_notify_enabled(enabled: bool) -> None:
    with _lock:
        _state["NOTIFY_ENABLED"] = bool(enabled)

def notify_enabled() -> bool:
    with _lock:
        return bool(_state.get("NOTIFY_ENABLED", True))
