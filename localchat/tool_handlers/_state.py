"""
Shared constants and session state for tool handlers.

The working directory is the one piece of mutable state the handlers share.
It lives in a WorkingDirectory object owned by the ToolExecutor and passed to
each handler, so `cd` in one shell call is visible to the next file read.
"""

import os
import threading
from typing import Any, Dict, Optional, Tuple


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_FILE_SIZE = 5 * 1024 * 1024  # 5MB
MAX_SHELL_OUTPUT_CHARS = 30000
DEFAULT_SHELL_TIMEOUT_MS = 120000
MAX_SHELL_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_SHELL_MAX_OUTPUT_BYTES = 10 * 1024 * 1024

WEB_FETCH_MAX_CHARS = 10000
WEB_SEARCH_DEFAULT_RESULTS = 5
WEB_SEARCH_MAX_RESULTS = 10


class WorkingDirectory:
    """The current directory that anchors every relative path and shell call."""

    def __init__(self, path: Optional[str] = None):
        self._lock = threading.Lock()
        self._path = os.path.realpath(path or os.getcwd())

    @property
    def path(self) -> str:
        with self._lock:
            return self._path

    def change(self, path: str) -> bool:
        """Switch to path if it is an existing directory."""
        target = os.path.realpath(os.path.expanduser(path))
        if not os.path.isdir(target):
            return False
        with self._lock:
            self._path = target
        return True

    def __str__(self) -> str:
        return self.path

    def __repr__(self) -> str:
        return f"WorkingDirectory({self.path!r})"


def _require_args_dict(args: Any, tool_name: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    if not isinstance(args, dict):
        return None, f"invalid arguments for tool '{tool_name}': expected object"
    return dict(args), None


def _failure(error: str, **payload: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": False, "error": error}
    out.update(payload)
    return out
