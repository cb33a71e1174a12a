# receipt_scanner/services/storage_service.py
from __future__ import annotations

import hashlib
import json
import os
from typing import Any, Dict, Optional

from receipt_scanner.config import get_settings
from receipt_scanner.logging_utils import get_logger

log = get_logger(__name__)

# Per-user cache of Google resource ids (Drive folder, spreadsheet), so we
# don't search Drive on every save.
FOLDER_ID = "drive_folder_id"
SPREADSHEET_ID = "spreadsheet_id"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _state_dir(data_dir: Optional[str] = None) -> str:
    return os.path.join(data_dir or get_settings().data_dir, "state")


def _state_path(user_key: str, data_dir: Optional[str] = None) -> str:
    digest = hashlib.sha1((user_key or "").strip().lower().encode("utf-8")).hexdigest()[:16]
    return os.path.join(_state_dir(data_dir), f"{digest}.json")


def _safe_json_dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=str)


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def load_state(user_key: str, data_dir: Optional[str] = None) -> Dict[str, Any]:
    path = _state_path(user_key, data_dir)
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("Ignoring unreadable state file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_state(user_key: str, state: Dict[str, Any], data_dir: Optional[str] = None) -> str:
    """Atomic write (tmp + replace). Returns the file path."""
    os.makedirs(_state_dir(data_dir), exist_ok=True)
    path = _state_path(user_key, data_dir)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(_safe_json_dump(state))
    os.replace(tmp_path, path)
    return path


def get_state_value(user_key: str, key: str, data_dir: Optional[str] = None) -> Optional[str]:
    return load_state(user_key, data_dir).get(key)


def update_state(user_key: str, data_dir: Optional[str] = None, **values: Any) -> Dict[str, Any]:
    state = load_state(user_key, data_dir)
    state.update(values)
    save_state(user_key, state, data_dir)
    return state


def clear_state_key(user_key: str, key: str, data_dir: Optional[str] = None) -> None:
    state = load_state(user_key, data_dir)
    if key in state:
        state.pop(key)
        save_state(user_key, state, data_dir)
