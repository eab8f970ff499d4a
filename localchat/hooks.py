"""
Hook registry for localchat lifecycle events.

The agent loop emits named events (turn start, stream deltas, tool calls,
safety verdicts). Middleware and front-ends subscribe to them here instead of
being wired into the controller. A hook may return a dict to replace the data
passed to the hooks registered after it.

Usage:
    from localchat import hooks

    def show_delta(data):
        print(data["text"], end="", flush=True)

    hooks.register("stream_content", show_delta)
"""

from typing import Any, Callable, Dict, List

HookCallback = Callable[[Dict[str, Any]], Any]

_hooks: Dict[str, List[HookCallback]] = {}


def register(event: str, callback: HookCallback) -> None:
    """Subscribe callback to event."""
    _hooks.setdefault(event, []).append(callback)


def unregister(event: str, callback: HookCallback) -> bool:
    """Remove one subscription. Returns False when it was not registered."""
    callbacks = _hooks.get(event, [])
    if callback not in callbacks:
        return False
    callbacks.remove(callback)
    return True


def emit(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Run every callback registered for event, in registration order."""
    for cb in list(_hooks.get(event, [])):
        result = cb(data)
        if isinstance(result, dict):
            data = result
    return data


def clear() -> None:
    _hooks.clear()


def registered_events() -> List[str]:
    """Events with at least one live subscription."""
    return [ev for ev, cbs in _hooks.items() if cbs]
