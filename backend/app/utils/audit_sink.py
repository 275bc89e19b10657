from __future__ import annotations
import os, json, logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

# Default: backend/var/audit (override with env AUDIT_DIR)
_DEFAULT_DIR = Path(__file__).resolve().parents[2] / "var" / "audit"
AUDIT_DIR = Path(os.getenv("AUDIT_DIR", str(_DEFAULT_DIR)))

def _ensure_dir() -> None:
    AUDIT_DIR.mkdir(parents=True, exist_ok=True)

def write_event(event: Dict[str, Any]) -> None:
    """
    Append a single audit event to a day-partitioned .jsonl file.
    The DB row is the record of truth; a failed mirror write is logged only.
    """
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    try:
        _ensure_dir()
        fp = AUDIT_DIR / f"{day}.jsonl"
        with fp.open("a", encoding="utf-8") as fh:
            json.dump(event, fh, ensure_ascii=False, default=str)
            fh.write("\n")
    except OSError as e:
        logger.warning("[audit] mirror write failed for %s: %s", day, e)

def list_audit_files() -> List[Dict[str, Any]]:
    if not AUDIT_DIR.exists():
        return []
    out = []
    for fp in sorted(AUDIT_DIR.glob("*.jsonl"), reverse=True):
        st = fp.stat()
        out.append({"name": fp.name, "size": st.st_size})
    return out
