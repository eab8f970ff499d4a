"""
Tool dispatch: ToolExecutor routes a normalized call to its handler.
"""

import sys
from typing import Any, Callable, Dict, Optional

from localchat.config import Settings, supports_tools
from localchat.history import ToolResult
from localchat.middleware.logging_hook import log_event
from localchat.tool_handlers._state import WorkingDirectory
from localchat.tool_handlers.read_handlers import read
from localchat.tool_handlers.schema import (
    SYSTEM_TOOL_NAMES,
    WEB_TOOL_NAMES,
    ToolRegistry,
    build_registry,
    make_tool_declarations,
)
from localchat.tool_handlers.shell_handler import ProcessRegistry, bash
from localchat.tool_handlers.web_handlers import WebTools
from localchat.tool_handlers.write_handlers import edit, write

Handler = Callable[[Dict[str, Any]], Dict[str, Any]]


class ToolExecutor:
    """Runs tool calls against one working directory.

    Handlers return {"success": ..., ...} dicts or raise; any exception is
    turned into a failed ToolResult here so tool problems stay in the
    conversation instead of ending the session.
    """

    def __init__(
        self,
        settings: Settings,
        working_directory: Optional[WorkingDirectory] = None,
        processes: Optional[ProcessRegistry] = None,
        web: Optional[WebTools] = None,
        platform: Optional[str] = None,
    ):
        self.settings = settings
        self.cwd = working_directory or WorkingDirectory()
        self.processes = processes or ProcessRegistry()
        self.web = web or WebTools(settings.web)
        self.platform = platform or sys.platform
        self._handlers: Dict[str, Handler] = {
            "read": lambda args: read(args, self.cwd),
            "write": lambda args: write(args, self.cwd),
            "edit": lambda args: edit(args, self.cwd),
            "bash": self._bash,
            "web_search": self.web.web_search,
            "web_fetch": self.web.web_fetch,
        }

    def _bash(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return bash(
            args,
            self.cwd,
            self.processes,
            timeout_ms=self.settings.shell.timeout_ms,
            max_output_bytes=self.settings.shell.max_output_bytes,
            platform=self.platform,
        )

    def available_tools(self, model: str) -> ToolRegistry:
        """Tools to declare for model under the current settings."""
        if not supports_tools(model):
            return {}
        names = []
        if self.settings.code_mode:
            names.extend(SYSTEM_TOOL_NAMES)
        if self.web.enabled:
            names.extend(WEB_TOOL_NAMES)
        return build_registry(names)

    def declarations(self, model: str):
        return make_tool_declarations(self.available_tools(model))

    def execute(self, tool_name: str, args: Dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(tool_name)
        if handler is None:
            return ToolResult.fail(f"Unknown tool: {tool_name}")
        try:
            return ToolResult.from_handler(handler(args))
        except Exception as err:
            log_event("tool_exception", {"tool": tool_name, "error": str(err), "type": type(err).__name__})
            return ToolResult.fail(str(err) or type(err).__name__)

    def reset_conversation(self) -> None:
        """Start per-conversation budgets (web searches) from zero."""
        self.web.reset()

    def shutdown(self) -> int:
        """Kill every shell process still running. Returns how many were killed."""
        return self.processes.kill_all()
