import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Debug flag: enable when running tests or when env var SNL_DEBUG is set
DEBUG = bool(os.getenv('SNL_DEBUG')) or ('unittest' in sys.modules) or ('PYTEST_CURRENT_TEST' in os.environ)

# Maintain per-session filename base so all writes go to the same timestamped file
_SESSION_FILE_BASE: Dict[str, str] = {}


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _log_dir() -> str:
    override = os.getenv("SNL_LOG_DIR")
    if override:
        return os.path.abspath(override)
    # ../../logs/sessions relative to this file
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "logs", "sessions"))


def _file_base_for(session_id: str) -> str:
    """Return a stable '<timestamp>_<session_id>' base for this process."""
    if session_id in _SESSION_FILE_BASE:
        return _SESSION_FILE_BASE[session_id]
    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    base = f"{ts}_{session_id}"
    _SESSION_FILE_BASE[session_id] = base
    return base


def audit_write(session_id: Optional[str], record: Dict[str, Any]) -> None:
    """Append a structured JSON line to the per-session audit log.

    Records without a session (before anything is loaded) go to ``_nosession``.
    """
    if os.getenv("SNL_AUDIT", "1") == "0":
        return
    sid = session_id or "_nosession"
    record = dict(record)
    record.setdefault("ts", datetime.now(timezone.utc).isoformat())
    record.setdefault("session_id", sid)
    try:
        base_dir = _log_dir()
        _ensure_dir(base_dir)
        log_path = os.path.join(base_dir, f"{_file_base_for(sid)}.log")
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError:
        # Never raise from audit logging; it's best-effort.
        pass


def dbg(session_id: Optional[str], *args, **kwargs) -> None:
    """Debug helper: prints when DEBUG, always writes to the session log."""
    if DEBUG:
        print(*args, **kwargs)
    msg = " ".join(str(a) for a in args)
    audit_write(session_id, {"type": "debug", "msg": msg})
