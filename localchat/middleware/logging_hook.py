"""
Logging middleware: JSONL event log for chat sessions.

Every lifecycle event emitted through localchat.hooks is appended to a single
JSONL file, one record per line. Components that need to record an operational
fact without going through the hook registry call log_event() directly.
"""

import json
import os
import re
import threading
import time
from typing import Any, Dict, Optional

from localchat import hooks

_log_path: Optional[str] = None
_run_context: Dict[str, Any] = {}
_write_lock = threading.Lock()

_ALL_EVENTS = [
    "turn_start", "turn_end",
    "request_start",
    "stream_end",
    "tool_before", "tool_after",
    "permission_request",
    "safety_verdict",
    "session_save",
]

# Bulky or streaming fields that would flood the log.
_SKIPPED_FIELDS = ("messages", "request_body", "history")

_CONTEXT_FIELDS = ("model", "working_directory", "session")


def get_log_path() -> Optional[str]:
    return _log_path


def set_log_path(path: Optional[str]) -> None:
    global _log_path
    _log_path = path


def _write_event(event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
    if not _log_path:
        return
    rec: Dict[str, Any] = {"ts": time.strftime("%Y-%m-%dT%H:%M:%S"), "event": event_type}
    for key in _CONTEXT_FIELDS:
        val = _run_context.get(key)
        if val:
            rec[key] = val
    if payload:
        rec.update(payload)
    line = json.dumps(rec, ensure_ascii=False, default=str) + "\n"
    directory = os.path.dirname(_log_path)
    with _write_lock:
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(_log_path, "a", encoding="utf-8") as f:
            f.write(line)


def _on_event(event_name: str):
    def callback(data: Dict[str, Any]) -> None:
        payload = {k: v for k, v in data.items() if k not in _SKIPPED_FIELDS}
        _write_event(event_name, payload)
    return callback


def log_event(event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
    """Append one record to the event log. No-op until logging is initialised."""
    _write_event(event_type, payload)


def init_logging(log_dir: str, name: Optional[str] = None) -> str:
    """Pick the log file for this process and return its path."""
    global _log_path
    if _log_path:
        return _log_path
    os.makedirs(log_dir, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", name or "chat")
    _log_path = os.path.join(log_dir, f"localchat_{safe_name}_{timestamp}.jsonl")
    return _log_path


def update_run_context(context: Dict[str, Any]) -> None:
    """Stamp fields such as model and working_directory onto every record."""
    _run_context.update(context)


def reset() -> None:
    global _log_path
    _log_path = None
    _run_context.clear()


def install(log_path: Optional[str] = None, run_context: Optional[Dict[str, Any]] = None) -> None:
    """Subscribe the JSONL writer to every lifecycle event."""
    global _log_path
    if log_path:
        _log_path = log_path
    if run_context:
        _run_context.update(run_context)

    for event in _ALL_EVENTS:
        hooks.register(event, _on_event(event))
