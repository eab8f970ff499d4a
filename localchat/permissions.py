"""
Per-project tool permissions.

Allowed tools are stored in <working_directory>/.<model family>/permissions.json
as fingerprints: "bash:<first word>" for shell commands and the plain tool name
for everything else. Shell commands that can expose credentials get a
fingerprint that is never stored, so they are asked about every time.
"""

import json
import os
import threading
import time
from typing import Any, Dict, List, Optional

from localchat.config import model_family
from localchat.history import ToolCallRequest, ToolResult
from localchat.middleware.logging_hook import log_event
from localchat.tool_handlers._sandbox import is_credential_sensitive

PERMISSIONS_FILENAME = "permissions.json"
CREDENTIAL_SENSITIVE_PREFIX = "bash:CREDENTIAL_SENSITIVE:"

DENIED_MESSAGE = (
    "DENIED_BY_USER: The user declined this tool call. Do not retry it. Explain to the "
    "user that the action was not permitted and ask how they would like to proceed."
)


class PermissionDecision:
    ALLOW_ONCE = "allow-once"
    ALLOW_ALWAYS = "allow-always"
    DENY = "deny"

    ALL = (ALLOW_ONCE, ALLOW_ALWAYS, DENY)


def denied_result() -> ToolResult:
    """Tool result fed back to the model when the user says no."""
    return ToolResult(False, {"message": DENIED_MESSAGE})


def fingerprint(tool_name: str, args: Optional[Dict[str, Any]]) -> str:
    if tool_name == "bash" and isinstance(args, dict) and args.get("command"):
        command = str(args["command"])
        if is_credential_sensitive(command):
            return f"{CREDENTIAL_SENSITIVE_PREFIX}{command[:20]}"
        parts = command.split()
        return f"bash:{parts[0] if parts else ''}"
    return tool_name


class PermissionGate:
    """Loads, checks and persists the allow-list for one (project, model family)."""

    def __init__(self, working_directory: str, model: str):
        self.working_directory = working_directory
        self.model = model
        self.config_dir = os.path.join(working_directory, f".{model_family(model)}")
        self.path = os.path.join(self.config_dir, PERMISSIONS_FILENAME)
        self._lock = threading.Lock()
        self.record: Dict[str, Any] = self.load()

    def _default_record(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "created_at": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "working_directory": self.working_directory,
            "allowed_tools": [],
        }

    def load(self) -> Dict[str, Any]:
        """Read the permission file; anything unreadable is replaced by a fresh record."""
        if not os.path.exists(self.path):
            record = self._default_record()
            self._write(record)
            return record
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            log_event("permissions_reset", {"path": self.path, "reason": str(exc)})
            record = self._default_record()
            self._write(record)
            return record
        if not isinstance(data, dict):
            log_event("permissions_reset", {"path": self.path, "reason": "not an object"})
            record = self._default_record()
            self._write(record)
            return record
        allowed = data.get("allowed_tools")
        if not isinstance(allowed, list) or not all(isinstance(t, str) for t in allowed):
            log_event("permissions_reset", {"path": self.path, "reason": "allowed_tools is not a list"})
            data["allowed_tools"] = []
            self._write(data)
        return data

    def _write(self, record: Dict[str, Any]) -> bool:
        try:
            os.makedirs(self.config_dir, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2, ensure_ascii=False)
        except OSError as exc:
            log_event("permissions_save_error", {"path": self.path, "error": str(exc)})
            return False
        return True

    def save(self) -> bool:
        with self._lock:
            return self._write(self.record)

    @property
    def allowed_tools(self) -> List[str]:
        return list(self.record.get("allowed_tools") or [])

    def fingerprint(self, tool_name: str, args: Optional[Dict[str, Any]]) -> str:
        return fingerprint(tool_name, args)

    def is_allowed(self, tool_name: str, args: Optional[Dict[str, Any]]) -> bool:
        key = fingerprint(tool_name, args)
        if key.startswith(CREDENTIAL_SENSITIVE_PREFIX):
            return False
        return key in self.allowed_tools

    def record_allowed(self, tool_name: str, args: Optional[Dict[str, Any]]) -> bool:
        """Persist an allow-always decision. Returns False if it was not stored."""
        key = fingerprint(tool_name, args)
        if key.startswith(CREDENTIAL_SENSITIVE_PREFIX):
            log_event("permissions_not_persisted", {"fingerprint": key})
            return False
        with self._lock:
            allowed = self.record.setdefault("allowed_tools", [])
            if not isinstance(allowed, list):
                allowed = self.record["allowed_tools"] = []
            if key in allowed:
                return True
            allowed.append(key)
            return self._write(self.record)

    def reset(self) -> None:
        with self._lock:
            self.record = self._default_record()
            self._write(self.record)


class PermissionPrompt:
    """Hands a pending tool call to another thread (usually the UI) for a decision.

    The agent thread calls ask(), which blocks until answer() or cancel() is
    called from elsewhere. A cancelled prompt resolves to deny, and keeps
    denying until reset() is called at the start of the next turn.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._pending: Optional[ToolCallRequest] = None
        self._decision: Optional[str] = None
        self._cancelled = False

    @property
    def pending(self) -> Optional[ToolCallRequest]:
        with self._cond:
            return self._pending

    def ask(self, request: ToolCallRequest, timeout: Optional[float] = None) -> str:
        with self._cond:
            self._pending = request
            self._decision = None
            self._cond.notify_all()
            self._cond.wait_for(lambda: self._decision is not None or self._cancelled, timeout)
            decision = self._decision or PermissionDecision.DENY
            if self._cancelled:
                decision = PermissionDecision.DENY
            self._pending = None
            self._decision = None
            return decision

    def wait_for_request(self, timeout: Optional[float] = None) -> Optional[ToolCallRequest]:
        """Block until a call is waiting for a decision (for the answering thread)."""
        with self._cond:
            self._cond.wait_for(lambda: self._pending is not None, timeout)
            return self._pending

    def answer(self, decision: str) -> None:
        if decision not in PermissionDecision.ALL:
            raise ValueError(f"Unknown permission decision: {decision}")
        with self._cond:
            if self._pending is None:
                return
            self._decision = decision
            self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def reset(self) -> None:
        with self._cond:
            self._cancelled = False

    def __call__(self, request: ToolCallRequest) -> str:
        return self.ask(request)
