"""localchat: agent-loop core for a chat client driving a local /api/chat server.

Top-level names are resolved lazily so that importing localchat.hooks or
localchat.middleware does not pull in the whole agent stack.
"""

import importlib

__version__ = "0.1.0"

_EXPORTS = {
    "AgentLoopController": "localchat.agent",
    "TurnOutcome": "localchat.agent",
    "ConversationHistory": "localchat.history",
    "Message": "localchat.history",
    "PinnedContext": "localchat.history",
    "ToolCallRequest": "localchat.history",
    "ToolResult": "localchat.history",
    "InferenceClient": "localchat.client",
    "StreamIngester": "localchat.stream",
    "ToolCallNormalizer": "localchat.normalizer",
    "PermissionDecision": "localchat.permissions",
    "PermissionGate": "localchat.permissions",
    "PermissionPrompt": "localchat.permissions",
    "SafetyGovernor": "localchat.governor",
    "Settings": "localchat.config",
    "load_settings": "localchat.config",
    "ToolExecutor": "localchat.tool_handlers.dispatch",
}

__all__ = sorted(_EXPORTS) + ["__version__"]


def __getattr__(name):
    if name in ("hooks", "middleware", "tool_handlers"):
        return importlib.import_module(f".{name}", __name__)
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(importlib.import_module(module), name)


def __dir__():
    return sorted(set(globals()) | set(_EXPORTS))
