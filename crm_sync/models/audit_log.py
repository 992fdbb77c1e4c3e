# crm_sync/models/audit_log.py
from collections import deque
from typing import Any, Deque, Dict, List, Optional
import time
import threading

MAX_ENTRIES = 1000

audit_log: Deque[Dict[str, Any]] = deque(maxlen=MAX_ENTRIES)
lock = threading.Lock()


def add_audit_entry(action: str, user: str, details: str, job_id: Optional[str] = None):
    entry = {
        "action": action,
        "user": user,
        "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
        "details": details,
        "job_id": job_id,
    }
    with lock:
        audit_log.append(entry)


def get_audit_log(limit: int | None = None) -> List[Dict[str, Any]]:
    with lock:
        entries = list(audit_log)
    return entries[-limit:] if limit else entries


def clear_audit_log() -> None:
    with lock:
        audit_log.clear()
