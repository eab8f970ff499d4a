"""Chat persistence: save, load and list conversations on disk.

A session file is {name, model, messages, created, updated}. Messages use the
wire shape plus call ids, so tool results stay paired with their calls after a
reload. Credentials are masked before anything is written.
"""

import glob as globlib
import json
import os
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from localchat import hooks
from localchat.history import ConversationHistory, Message, message_to_wire
from localchat.middleware import logging_hook
from localchat.sanitize import redact_credentials


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name or "chat")


def create_new_session_path(sessions_dir: str, name: str) -> str:
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    return os.path.join(sessions_dir, f"{timestamp}_{_safe_name(name)}.json")


def find_latest_session(sessions_dir: str, name: str) -> Optional[str]:
    pattern = os.path.join(sessions_dir, f"*_{_safe_name(name)}.json")
    files = globlib.glob(pattern)
    if not files:
        return None
    files.sort(reverse=True)
    return files[0]


def list_sessions(sessions_dir: str) -> List[Dict[str, Any]]:
    """Summaries of every readable session file, newest first."""
    out: List[Dict[str, Any]] = []
    for path in sorted(globlib.glob(os.path.join(sessions_dir, "*.json")), reverse=True):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            continue
        if not isinstance(data, dict):
            continue
        out.append({
            "path": path,
            "name": data.get("name"),
            "model": data.get("model"),
            "message_count": len(data.get("messages") or []),
            "created": data.get("created"),
            "updated": data.get("updated"),
        })
    return out


def _redact_arguments(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    if name == "bash" and isinstance(arguments.get("command"), str):
        redacted = dict(arguments)
        redacted["command"] = redact_credentials(arguments["command"])
        return redacted
    return arguments


def message_record(message: Message) -> Dict[str, Any]:
    """Persisted form of one message: wire shape plus ids, credentials masked."""
    record = message_to_wire(message)
    record["content"] = redact_credentials(record["content"])
    if message.tool_calls:
        record["tool_calls"] = [
            {
                "id": tc.id,
                "function": {
                    "name": tc.name,
                    "arguments": _redact_arguments(tc.name, wire["function"]["arguments"]),
                },
            }
            for tc, wire in zip(message.tool_calls, record["tool_calls"])
        ]
    if message.thinking:
        record["thinking"] = redact_credentials(message.thinking)
    if message.tool_call_id:
        record["tool_call_id"] = message.tool_call_id
    return record


def save_session(path: str, history: ConversationHistory, model: str, name: str = "chat") -> bool:
    directory = os.path.dirname(path)
    created = None
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                existing = json.load(f)
            if isinstance(existing, dict):
                created = existing.get("created")
        except (OSError, ValueError):
            created = None

    messages = [message_record(m) for m in history]
    session_data = {
        "name": name,
        "model": model,
        "messages": messages,
        "created": created or time.strftime("%Y-%m-%dT%H:%M:%S"),
        "updated": time.strftime("%Y-%m-%dT%H:%M:%S"),
    }
    # Hook: session_save (read-only notification)
    hooks.emit("session_save", {"messages": messages, "path": path})

    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(session_data, f, indent=2, ensure_ascii=False)
    except OSError as exc:
        logging_hook.log_event("session_save_error", {"path": path, "error": str(exc)})
        return False

    logging_hook.log_event("session_saved", {"path": path, "message_count": len(messages)})
    return True


def load_session(path: str) -> Optional[Tuple[ConversationHistory, Dict[str, Any]]]:
    """Load one session file.

    Returns (history, meta) where meta holds name, model, created and updated,
    or None when the file is missing or unreadable.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            session_data = json.load(f)
        if not isinstance(session_data, dict):
            raise ValueError("session file is not a JSON object")
        msgs = session_data.get("messages") or []
        if not isinstance(msgs, list):
            raise ValueError("messages is not a list")
        history = ConversationHistory.from_wire(msgs)
    except (OSError, ValueError, AttributeError) as e:
        logging_hook.log_event("session_load_error", {"path": path, "error": str(e)})
        return None
    logging_hook.log_event("session_loaded", {"path": path, "message_count": len(history)})
    meta = {k: session_data.get(k) for k in ("name", "model", "created", "updated")}
    return history, meta
