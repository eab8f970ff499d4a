"""
Agent loop: request, stream, run tools, check safety, repeat.

AgentLoopController.run_turn() takes one user message and keeps re-prompting
the model with tool results until it answers in text, the SafetyGovernor
halts the loop, the user cancels, or the transport fails. All state lives on
the controller; front-ends observe progress through localchat.hooks.

States:
    idle -> requesting -> streaming -> idle                       (text answer)
                                    -> tool_executing -> safety_check
                                         -> requesting             (continue)
                                         -> idle                   (halt)
    any -> idle                                                    (cancel)
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from localchat import hooks
from localchat.client import InferenceClient, StreamHandle
from localchat.config import Settings
from localchat.governor import SafetyGovernor
from localchat.history import (
    STOPPED_MARKER,
    TIMED_OUT_MARKER,
    ConversationHistory,
    PinnedContext,
    ToolCallRequest,
    ToolResult,
)
from localchat.middleware.logging_hook import log_event
from localchat.normalizer import NormalizedCall, ToolCallNormalizer
from localchat.permissions import PermissionDecision, PermissionGate, denied_result
from localchat.retrieval import RetrievalGuard, SearchFn, inject_context
from localchat.session import save_session
from localchat.stream import (
    TERMINAL_EVENTS,
    Aborted,
    ContentDelta,
    StreamError,
    StreamEvent,
    ThinkingDelta,
    Usage,
)
from localchat.tool_handlers.dispatch import ToolExecutor

IDLE = "idle"
REQUESTING = "requesting"
STREAMING = "streaming"
TOOL_EXECUTING = "tool_executing"
SAFETY_CHECK = "safety_check"

COMPLETED = "completed"
HALTED = "halted"
CANCELLED = "cancelled"
ERROR = "error"

SKIPPED_AFTER_CANCEL = "Skipped: generation was stopped by the user before this tool ran."

DecisionFn = Callable[[ToolCallRequest], str]


@dataclass
class TurnOutcome:
    status: str
    content: str = ""
    reason: Optional[str] = None
    iterations: int = 0
    usage: Optional[Usage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "iterations": self.iterations,
            "content_chars": len(self.content),
        }


class AgentLoopController:
    """Runs the agent loop for one conversation.

    decide is called with a ToolCallRequest whenever a tool is not on the
    allow-list and must return a PermissionDecision value. Without it every
    such call is denied. Only one turn may run at a time; cancel() is the one
    method meant to be called from another thread.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[InferenceClient] = None,
        executor: Optional[ToolExecutor] = None,
        gate: Optional[PermissionGate] = None,
        decide: Optional[DecisionFn] = None,
        governor: Optional[SafetyGovernor] = None,
        search: Optional[SearchFn] = None,
        pinned: Optional[PinnedContext] = None,
        history: Optional[ConversationHistory] = None,
        session_path: Optional[str] = None,
        session_name: str = "chat",
    ):
        self.settings = settings
        self.client = client or InferenceClient(settings)
        self.executor = executor or ToolExecutor(settings)
        self.gate = gate or PermissionGate(self.executor.cwd.path, settings.model)
        self.decide = decide
        self.governor = governor or SafetyGovernor(
            settings.governor, settings.model, settings.options.num_ctx
        )
        self.retrieval: Optional[RetrievalGuard] = None
        if search is not None:
            self.retrieval = RetrievalGuard(search, settings.rag_timeout, settings.rag_max_failures)
        self.pinned = pinned or PinnedContext()
        self.history = history or ConversationHistory()
        self.session_path = session_path
        self.session_name = session_name

        self.state = IDLE
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._handle: Optional[StreamHandle] = None

    # -- request construction ------------------------------------------------

    def build_request_messages(self, with_retrieval: bool = True) -> List[Dict[str, Any]]:
        """Fresh wire copy of history with pinned notes and retrieval context."""
        wire = self.history.to_wire()
        if with_retrieval and self.retrieval is not None and self.settings.rag_enabled:
            context = self.retrieval.context_for(self.history)
            if context:
                wire = inject_context(wire, context)
        pinned = self.pinned.as_system_message()
        if pinned:
            wire.insert(0, pinned)
        return wire

    # -- public API ------------------------------------------------------------

    def run_turn(self, user_text: str) -> TurnOutcome:
        self._cancel.clear()
        reset_prompt = getattr(self.decide, "reset", None)
        if callable(reset_prompt):
            reset_prompt()
        self.history.append_user(user_text)
        hooks.emit("turn_start", {
            "model": self.settings.model,
            "message_count": len(self.history),
            "working_directory": self.executor.cwd.path,
        })
        outcome = TurnOutcome(ERROR)
        try:
            outcome = self._loop()
        finally:
            self.state = IDLE
            hooks.emit("turn_end", outcome.to_dict())
            if self.session_path:
                save_session(self.session_path, self.history, self.settings.model, self.session_name)
        return outcome

    def cancel(self) -> None:
        """Stop the running turn: abort the stream and release a pending permission prompt."""
        self._cancel.set()
        with self._lock:
            handle = self._handle
        if handle is not None:
            handle.abort("user")
        cancel_prompt = getattr(self.decide, "cancel", None)
        if callable(cancel_prompt):
            cancel_prompt()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def new_conversation(self) -> None:
        self.history.clear()
        self.executor.reset_conversation()
        if self.retrieval is not None:
            self.retrieval.reset()

    def close(self) -> None:
        killed = self.executor.shutdown()
        log_event("controller_closed", {"processes_killed": killed})

    # -- loop --------------------------------------------------------------------

    def _loop(self) -> TurnOutcome:
        iterations = 0
        usage: Optional[Usage] = None
        model = self.settings.model
        timeout = self.settings.iteration_timeout
        while True:
            iterations += 1
            started = time.monotonic()

            self.state = REQUESTING
            registry = self.executor.available_tools(model)
            messages = self.build_request_messages(with_retrieval=iterations == 1)
            handle = self.client.open_stream(messages, self.executor.declarations(model))
            terminal = self._stream(handle, timeout)
            hooks.emit("stream_end", {
                "iteration": iterations,
                "terminal": type(terminal).__name__,
                "content_chars": len(terminal.content),
                "tool_calls": len(terminal.tool_calls),
            })

            if isinstance(terminal, Aborted):
                return self._aborted(terminal, iterations, usage, timeout)
            if isinstance(terminal, StreamError):
                log_event("turn_error", {"iteration": iterations, "error": terminal.cause})
                return TurnOutcome(ERROR, terminal.content, terminal.cause, iterations, usage)

            usage = terminal.usage or usage
            if not terminal.tool_calls:
                self.history.append_assistant(terminal.content, thinking=terminal.thinking)
                return TurnOutcome(COMPLETED, terminal.content, None, iterations, usage)

            self.state = TOOL_EXECUTING
            calls = ToolCallNormalizer(registry).normalize(terminal.tool_calls)
            self.history.append_assistant(
                terminal.content, [c.request for c in calls], thinking=terminal.thinking
            )
            for idx, call in enumerate(calls):
                if self._cancel.is_set():
                    for skipped in calls[idx:]:
                        self.history.append_tool_result(skipped.request, ToolResult.fail(SKIPPED_AFTER_CANCEL))
                    return TurnOutcome(CANCELLED, terminal.content, "cancelled by user", iterations, usage)
                self.history.append_tool_result(call.request, self._run_tool(call))

            # a cancel during the last tool of the batch ends the turn here
            if self._cancel.is_set():
                return TurnOutcome(CANCELLED, terminal.content, "cancelled by user", iterations, usage)

            if time.monotonic() - started > timeout:
                return TurnOutcome(HALTED, terminal.content, _timeout_reason(timeout), iterations, usage)

            self.state = SAFETY_CHECK
            verdict = self.governor.evaluate(self.history)
            hooks.emit("safety_verdict", verdict.to_dict())
            if verdict.strip_thinking:
                self.history.strip_thinking()
            if verdict.halted:
                return TurnOutcome(HALTED, terminal.content, verdict.reason, iterations, usage)
            for text in verdict.injected:
                self.history.append_user(text)

    def _stream(self, handle: StreamHandle, timeout: float):
        with self._lock:
            self._handle = handle
        if self._cancel.is_set():
            handle.abort("user")
        timer = threading.Timer(timeout, handle.abort, args=("timeout",))
        timer.daemon = True
        timer.start()
        try:
            self.state = STREAMING
            for event in handle.events():
                if isinstance(event, TERMINAL_EVENTS):
                    return event
                self._forward(event)
        finally:
            timer.cancel()
            with self._lock:
                self._handle = None
        return StreamError("stream ended without a terminal event")

    @staticmethod
    def _forward(event: StreamEvent) -> None:
        if isinstance(event, ThinkingDelta):
            hooks.emit("stream_thinking", {"text": event.text})
        elif isinstance(event, ContentDelta):
            hooks.emit("stream_content", {"text": event.text})

    def _aborted(self, terminal: Aborted, iterations: int, usage: Optional[Usage],
                 timeout: float) -> TurnOutcome:
        if terminal.reason == "timeout":
            content = terminal.content + TIMED_OUT_MARKER
            self.history.append_assistant(content, thinking=terminal.thinking)
            return TurnOutcome(HALTED, content, _timeout_reason(timeout), iterations, usage)
        if not terminal.content.strip():
            return TurnOutcome(CANCELLED, "", "cancelled by user", iterations, usage)
        content = terminal.content + STOPPED_MARKER
        self.history.append_assistant(content, thinking=terminal.thinking)
        return TurnOutcome(CANCELLED, content, "cancelled by user", iterations, usage)

    # -- tools ---------------------------------------------------------------------

    def _run_tool(self, call: NormalizedCall) -> ToolResult:
        request = call.request
        hooks.emit("tool_before", {
            "tool_name": request.name,
            "arguments": request.arguments,
            "call_id": request.id,
        })
        denied = False
        started = time.time()
        if not call.ok:
            result = ToolResult.fail(call.error or "invalid tool call")
        elif self.gate.is_allowed(request.name, request.arguments):
            result = self.executor.execute(request.name, request.arguments)
        else:
            decision = self._ask_permission(request)
            if decision == PermissionDecision.DENY:
                denied = True
                result = denied_result()
            else:
                if decision == PermissionDecision.ALLOW_ALWAYS:
                    self.gate.record_allowed(request.name, request.arguments)
                result = self.executor.execute(request.name, request.arguments)
        hooks.emit("tool_after", {
            "tool_name": request.name,
            "call_id": request.id,
            "success": result.success,
            "denied": denied,
            "error": result.error,
            "duration_seconds": round(time.time() - started, 3),
        })
        return result

    def _ask_permission(self, request: ToolCallRequest) -> str:
        hooks.emit("permission_request", {
            "tool_name": request.name,
            "arguments": request.arguments,
            "fingerprint": self.gate.fingerprint(request.name, request.arguments),
        })
        if self.decide is None or self._cancel.is_set():
            return PermissionDecision.DENY
        decision = self.decide(request)
        if decision not in PermissionDecision.ALL:
            log_event("permission_decision_invalid", {"decision": str(decision)})
            return PermissionDecision.DENY
        return decision


def _timeout_reason(timeout: float) -> str:
    return f"iteration timed out after {timeout:g} s"
