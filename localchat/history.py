"""
Conversation data model and the wire serialization adapter.

ConversationHistory is the only owner of the message log. Everything else
either appends through its methods or reads a snapshot. Requests are built
from a fresh wire copy (message_to_wire) so request-only material such as
retrieval context and pinned notes never leaks back into history.
"""

import copy
import dataclasses
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from localchat.middleware.logging_hook import log_event

ROLES = ("user", "assistant", "tool", "system")

STOPPED_MARKER = "\n\n[Generation stopped by user]"
TIMED_OUT_MARKER = "\n\n[Generation timed out]"

_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_CHANNEL_BLOCK_RE = re.compile(
    r"<\|channel\|>(?:analysis|commentary).*?(?=<\|channel\|>final|$)", re.DOTALL
)
_CHANNEL_FINAL_RE = re.compile(r"<\|channel\|>final(?:<\|message\|>)?")


def coerce_arguments(value: Any) -> Dict[str, Any]:
    """Return tool-call arguments as a fresh dict.

    Accepts a dict, a JSON-encoded object string, or nothing. Raises ValueError
    for anything that does not decode to an object.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return copy.deepcopy(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return {}
        decoded = json.loads(text)
        if not isinstance(decoded, dict):
            raise ValueError(f"tool arguments must be a JSON object, got {type(decoded).__name__}")
        return decoded
    raise ValueError(f"tool arguments must be an object, got {type(value).__name__}")


def ensure_argument_object(value: Any) -> Dict[str, Any]:
    """Wire-boundary variant of coerce_arguments that never raises."""
    if isinstance(value, dict):
        return value
    try:
        coerced = coerce_arguments(value)
    except ValueError as exc:
        log_event("wire_arguments_coerced", {"error": str(exc), "raw_type": type(value).__name__})
        return {}
    log_event("wire_arguments_coerced", {"raw_type": type(value).__name__})
    return coerced


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def signature(self) -> Tuple[str, str]:
        """(name, canonical JSON of arguments) for structural comparison."""
        return self.name, json.dumps(self.arguments, sort_keys=True, ensure_ascii=False)


@dataclass(frozen=True)
class ToolResult:
    success: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **payload: Any) -> "ToolResult":
        return cls(True, payload)

    @classmethod
    def fail(cls, error: str, **payload: Any) -> "ToolResult":
        return cls(False, payload, error)

    @classmethod
    def from_handler(cls, data: Dict[str, Any]) -> "ToolResult":
        """Wrap a handler's {success, ...} dict."""
        body = dict(data)
        success = bool(body.pop("success", False))
        error = body.pop("error", None)
        if not success and error is None and "message" not in body:
            error = "tool failed without an error message"
        return cls(success, body, error)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        out.update(self.payload)
        if self.error is not None:
            out["error"] = self.error
        return out

    def to_content(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass(frozen=True)
class Message:
    role: str
    content: str = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    thinking: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role: {self.role!r}")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages carry tool calls")
        if self.tool_name is not None and self.role != "tool":
            raise ValueError("tool_name is only valid on tool messages")

    @property
    def is_empty_tool_turn(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls) and not self.content.strip()


def message_to_wire(message: Message) -> Dict[str, Any]:
    """Serialize one Message into the /api/chat message shape.

    Call ids, tool_call_id and reasoning traces stay internal. Arguments are
    checked again here because a string payload is rejected by the server
    without explanation.
    """
    wire: Dict[str, Any] = {"role": message.role, "content": message.content or ""}
    if message.role == "assistant" and message.tool_calls:
        wire["tool_calls"] = [
            {"function": {"name": tc.name, "arguments": ensure_argument_object(tc.arguments)}}
            for tc in message.tool_calls
        ]
    elif message.role == "tool" and message.tool_name:
        wire["tool_name"] = message.tool_name
    return wire


def message_from_wire(data: Dict[str, Any], index: int = 0) -> Message:
    """Rebuild a Message from its wire or persisted form."""
    role = data.get("role", "user")
    calls = []
    for pos, raw in enumerate(data.get("tool_calls") or []):
        func = raw.get("function") or {}
        call_id = raw.get("id") or f"call_{index}_{pos}"
        calls.append(ToolCallRequest(
            id=str(call_id),
            name=str(func.get("name") or ""),
            arguments=ensure_argument_object(func.get("arguments")),
        ))
    return Message(
        role=role,
        content=data.get("content") or "",
        tool_calls=tuple(calls),
        tool_name=data.get("tool_name") if role == "tool" else None,
        tool_call_id=data.get("tool_call_id") if role == "tool" else None,
        thinking=data.get("thinking") if role == "assistant" else None,
    )


def strip_reasoning_markup(text: str) -> str:
    """Remove <think> blocks and analysis/commentary channel spans."""
    if not text:
        return text
    cleaned = _THINK_BLOCK_RE.sub("", text)
    cleaned = _CHANNEL_BLOCK_RE.sub("", cleaned)
    cleaned = _CHANNEL_FINAL_RE.sub("", cleaned)
    return cleaned.strip()


class ConversationHistory:
    """Append-only message log for one conversation."""

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = []
        for msg in messages or []:
            self._append(msg)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def _append(self, message: Message) -> Message:
        if message.role == "tool" and message.tool_call_id is not None:
            if not self._has_pending_call(message.tool_call_id, message.tool_name):
                raise ValueError(
                    f"tool result for {message.tool_name!r} has no matching assistant tool call"
                )
        self._messages.append(message)
        return message

    def _has_pending_call(self, call_id: str, name: Optional[str]) -> bool:
        for msg in reversed(self._messages):
            if msg.role != "assistant":
                continue
            for tc in msg.tool_calls:
                if tc.id == call_id and (name is None or tc.name == name):
                    return True
        return False

    def append_user(self, content: str) -> Message:
        return self._append(Message("user", content or ""))

    def append_assistant(
        self,
        content: str,
        tool_calls: Optional[List[ToolCallRequest]] = None,
        thinking: Optional[str] = None,
    ) -> Message:
        return self._append(Message(
            "assistant",
            content or "",
            tool_calls=tuple(tool_calls or ()),
            thinking=thinking or None,
        ))

    def append_tool_result(self, request: ToolCallRequest, result: ToolResult) -> Message:
        return self._append(Message(
            "tool",
            result.to_content(),
            tool_name=request.name,
            tool_call_id=request.id,
        ))

    def append_message(self, message: Message) -> Message:
        """Append a prebuilt message (corrective injections, restored sessions)."""
        return self._append(message)

    def tool_calls(self) -> List[ToolCallRequest]:
        """Every tool call in the conversation, oldest first."""
        return [tc for msg in self._messages if msg.role == "assistant" for tc in msg.tool_calls]

    def strip_thinking(self) -> int:
        """Drop reasoning traces from earlier assistant turns. Returns messages changed."""
        changed = 0
        for idx, msg in enumerate(self._messages):
            if msg.role != "assistant":
                continue
            content = strip_reasoning_markup(msg.content)
            if content == msg.content and msg.thinking is None:
                continue
            self._messages[idx] = dataclasses.replace(msg, content=content, thinking=None)
            changed += 1
        return changed

    def clear(self) -> None:
        self._messages.clear()

    def to_wire(self) -> List[Dict[str, Any]]:
        return [message_to_wire(m) for m in self._messages]

    @classmethod
    def from_wire(cls, messages: List[Dict[str, Any]]) -> "ConversationHistory":
        history = cls()
        for idx, data in enumerate(messages):
            history._messages.append(message_from_wire(data, idx))
        return history


MAX_PINNED = 5


class PinnedContext:
    """Messages the user pinned so they are resent with every request.

    Pins are request-only; they are merged into one leading system message
    and never written into ConversationHistory.
    """

    def __init__(self, limit: int = MAX_PINNED):
        self.limit = limit
        self._pins: List[Tuple[str, str]] = []

    def __len__(self) -> int:
        return len(self._pins)

    def pin(self, role: str, content: str) -> bool:
        if len(self._pins) >= self.limit or not content:
            return False
        if (role, content) in self._pins:
            return False
        self._pins.append((role, content))
        return True

    def unpin(self, index: int) -> bool:
        if 0 <= index < len(self._pins):
            del self._pins[index]
            return True
        return False

    def clear(self) -> None:
        self._pins.clear()

    def as_system_message(self) -> Optional[Dict[str, Any]]:
        if not self._pins:
            return None
        body = "\n\n".join(f"[PINNED {role.upper()}] {content}" for role, content in self._pins)
        return {"role": "system", "content": body}
