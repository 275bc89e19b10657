# app/utils/policy.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Governance knobs for the change workflow (compose sets POLICY_PATH)
POLICY_PATH = Path(os.getenv(
    "POLICY_PATH",
    str(Path(__file__).resolve().parents[2] / "policies" / "policy.yaml"),
))

DEFAULTS: Dict[str, Any] = {
    "approvals": {
        "strict_sequence": True,
        "skip_pending_on_reject": False,
    },
    "changes": {
        "auto_approve_change_types": ["standard"],
        "block_early_implementation": True,
    },
    "routing_seed": [],
}

# cache in memory
_POLICY: Optional[dict] = None


# -------------------------- loading --------------------------

def _merge(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out

def _load_policy_from_file() -> dict:
    if POLICY_PATH.exists():
        with open(POLICY_PATH, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return _merge(DEFAULTS, data)
    return _merge(DEFAULTS, {})

def get_policy() -> dict:
    global _POLICY
    if _POLICY is None:
        _POLICY = _load_policy_from_file()
    return _POLICY

def reload_policy() -> dict:
    global _POLICY
    _POLICY = _load_policy_from_file()
    return _POLICY

def set_policy(overrides: dict) -> dict:
    """Replace the cached policy with defaults + `overrides` (tests, admin tooling)."""
    global _POLICY
    _POLICY = _merge(DEFAULTS, overrides or {})
    return _POLICY


# -------------------------- accessors --------------------------

def strict_sequence() -> bool:
    return bool(get_policy()["approvals"].get("strict_sequence", True))

def skip_pending_on_reject() -> bool:
    return bool(get_policy()["approvals"].get("skip_pending_on_reject", False))

def auto_approve_types() -> List[str]:
    return [str(t).lower() for t in (get_policy()["changes"].get("auto_approve_change_types") or [])]

def block_early_implementation() -> bool:
    return bool(get_policy()["changes"].get("block_early_implementation", True))

def routing_seed() -> List[dict]:
    """
    Entries look like:
      - {product: "Email", risk_level: high, levels: [alice, bob]}
    `levels` lists approver usernames in level order.
    """
    seed = get_policy().get("routing_seed") or []
    return [s for s in seed if isinstance(s, dict)]
