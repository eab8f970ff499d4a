"""
Tool-call normalization: turn raw streamed tool calls into ToolCallRequests.

Models send arguments either as objects or as JSON-encoded strings, sometimes
with small syntax slips, and some leak channel markup into the tool name. Each
call is repaired where that is safe and validated against the declared tools;
a call that cannot be repaired gets an error for that call only, which is
answered back to the model.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from localchat.history import ToolCallRequest, coerce_arguments
from localchat.middleware.logging_hook import log_event
from localchat.tool_handlers.schema import ToolRegistry, parse_param_type

TOOL_ALIAS_MAP: Dict[str, str] = {
    "shell": "bash",
    "run": "bash",
    "read_file": "read",
    "write_file": "write",
    "edit_file": "edit",
    "search": "web_search",
    "fetch": "web_fetch",
}

# Common alternative parameter names per tool -> canonical name.
_ARG_ALIASES: Dict[str, Dict[str, str]] = {
    "read": {
        "path": "file_path", "file": "file_path", "filename": "file_path",
        "filepath": "file_path", "start": "offset", "start_line": "offset",
        "lines": "limit", "count": "limit",
    },
    "write": {
        "path": "file_path", "file": "file_path", "filename": "file_path",
        "filepath": "file_path", "text": "content", "data": "content", "code": "content",
    },
    "edit": {
        "path": "file_path", "file": "file_path", "filename": "file_path",
        "filepath": "file_path",
        "old": "old_string", "old_text": "old_string", "search": "old_string", "find": "old_string",
        "new": "new_string", "new_text": "new_string", "replace": "new_string",
        "replacement": "new_string", "all": "replace_all",
    },
    "bash": {
        "cmd": "command", "script": "command", "timeout_ms": "timeout",
    },
    "web_search": {
        "q": "query", "search": "query", "limit": "max_results", "max": "max_results",
        "num_results": "max_results",
    },
    "web_fetch": {
        "link": "url", "href": "url",
    },
}


@dataclass(frozen=True)
class NormalizedCall:
    """A tool call after normalization; error is set when it must not run."""

    request: ToolCallRequest
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_tool_name(name: str) -> str:
    raw = (name or "").strip()
    if raw:
        raw = raw.splitlines()[0]
    if "<|" in raw:
        raw = raw.split("<|", 1)[0]
    key = raw.strip().lower()
    return TOOL_ALIAS_MAP.get(key, key)


def _repair_json(raw: str) -> str:
    """Fix the JSON slips small models make most often."""
    if not raw or not raw.strip():
        return raw
    s = raw.strip()
    if "'" in s and '"' not in s:
        s = s.replace("'", '"')
    opens_bracket = s.count("[") - s.count("]")
    if opens_bracket > 0:
        s += "]" * opens_bracket
    opens = s.count("{") - s.count("}")
    if opens > 0:
        s += "}" * opens
    return re.sub(r",\s*([}\]])", r"\1", s)


def _decode_arguments(raw: Any, tool_name: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    try:
        return coerce_arguments(raw), None
    except json.JSONDecodeError as exc:
        repaired = _repair_json(str(raw))
        if repaired != raw:
            try:
                args = coerce_arguments(repaired)
            except ValueError:
                pass
            else:
                log_event("format_repair", {"tool": tool_name, "reason": "json_repair"})
                return args, None
        return None, f"Invalid JSON in tool arguments: {exc}. Raw: {str(raw)[:100]}"
    except ValueError as exc:
        return None, str(exc)


def _normalize_arg_names(tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    aliases = _ARG_ALIASES.get(tool_name)
    if not aliases:
        return args
    normalized: Dict[str, Any] = {}
    for key, value in args.items():
        if key.lower() not in aliases:
            normalized[key] = value
    for key, value in args.items():
        canonical = aliases.get(key.lower())
        if canonical and canonical not in normalized:
            normalized[canonical] = value
    return normalized


def _coerce_integer_like_value(value: Any) -> Tuple[Optional[int], bool]:
    """10, 10.0, "10" and "10.0" all become 10."""
    if isinstance(value, bool):
        return None, False
    if isinstance(value, int):
        return value, True
    if isinstance(value, float):
        return (int(value), True) if value.is_integer() else (None, False)
    if isinstance(value, str):
        text = value.strip()
        if re.fullmatch(r"[-+]?\d+", text):
            return int(text), True
        if re.fullmatch(r"[-+]?\d+\.0+", text):
            return int(float(text)), True
    return None, False


def _coerce_boolean_like_value(value: Any) -> Tuple[Optional[bool], bool]:
    if isinstance(value, bool):
        return value, True
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true", True
    return None, False


def _validate_tool_args(tool_name: str, args: Dict[str, Any], params: Dict[str, Any]) -> Optional[str]:
    """Check args against the declared parameters, coercing numeric/boolean strings in place."""
    unknown = sorted(set(args) - set(params))
    if unknown:
        return (
            f"Unknown parameter(s) for tool '{tool_name}': {', '.join(unknown)}. "
            f"Valid parameters: {', '.join(sorted(params))}"
        )
    required = []
    for key, spec in params.items():
        base_type, optional = parse_param_type(spec)
        if base_type and not optional:
            required.append(key)
    missing = [key for key in required if key not in args]
    if missing:
        example = {p: "..." for p in required}
        return (
            f"Missing required parameter(s) for tool '{tool_name}': {', '.join(missing)}. "
            f"Example: {tool_name}({json.dumps(example)})"
        )

    for key in list(args):
        base_type, optional = parse_param_type(params[key])
        value = args[key]
        if value is None:
            if optional:
                del args[key]
                continue
            return f"Invalid type for parameter '{key}' on tool '{tool_name}': expected {base_type}"
        if base_type == "integer":
            coerced, ok = _coerce_integer_like_value(value)
            if not ok:
                return f"Invalid type for parameter '{key}' on tool '{tool_name}': expected whole number"
            args[key] = coerced
        elif base_type == "boolean":
            coerced_bool, ok = _coerce_boolean_like_value(value)
            if not ok:
                return f"Invalid type for parameter '{key}' on tool '{tool_name}': expected boolean"
            args[key] = coerced_bool
        elif base_type == "string" and not isinstance(value, str):
            return f"Invalid type for parameter '{key}' on tool '{tool_name}': expected string"
    return None


def invalid_tool_message(name: str, registry: ToolRegistry) -> str:
    valid = ", ".join(registry) or "(none)"
    return (
        f'INVALID_TOOL: Tool "{name}" does not exist. Valid tools are: {valid}. '
        "Use one of these names exactly, without channel markers."
    )


class ToolCallNormalizer:
    """Normalizes one batch of raw tool calls against the declared registry."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def normalize(self, raw_calls: List[Dict[str, Any]]) -> List[NormalizedCall]:
        results: List[NormalizedCall] = []
        used_ids = set()
        for index, raw in enumerate(raw_calls):
            call_id = self._call_id(raw, index, used_ids)
            results.append(self._normalize_one(raw, call_id))
        return results

    @staticmethod
    def _call_id(raw: Any, index: int, used_ids: set) -> str:
        call_id = raw.get("id") if isinstance(raw, dict) else None
        if not isinstance(call_id, str) or not call_id or call_id in used_ids:
            call_id = f"call_{index}"
            while call_id in used_ids:
                call_id += "_"
        used_ids.add(call_id)
        return call_id

    def _normalize_one(self, raw: Any, call_id: str) -> NormalizedCall:
        func = raw.get("function") if isinstance(raw, dict) else None
        if not isinstance(func, dict):
            return NormalizedCall(ToolCallRequest(call_id, ""), "Malformed tool call: missing function")
        raw_name = str(func.get("name") or "")
        name = resolve_tool_name(raw_name)
        if name != raw_name:
            log_event("format_repair", {"tool": name, "reason": "name_repair", "raw": raw_name[:80]})

        args, err = _decode_arguments(func.get("arguments"), name)
        if err:
            return NormalizedCall(ToolCallRequest(call_id, name), err)

        if name not in self.registry:
            return NormalizedCall(ToolCallRequest(call_id, name, args), invalid_tool_message(name, self.registry))

        remapped = _normalize_arg_names(name, args)
        if set(remapped) != set(args):
            log_event("format_repair", {
                "tool": name,
                "reason": "arg_alias_remap",
                "remapped": sorted(set(remapped) - set(args)),
            })
        error = _validate_tool_args(name, remapped, self.registry[name][1])
        return NormalizedCall(ToolCallRequest(call_id, name, remapped), error)
