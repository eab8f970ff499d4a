"""
Metrics middleware: per-turn tool call, error and halt counters.
"""

import time
from collections import Counter
from typing import Any, Dict, Optional

from localchat import hooks


class MetricsCollector:
    """Collects tool and safety metrics across the turns of one chat."""

    def __init__(self):
        self.turns: int = 0
        self.tool_calls_total: int = 0
        self.tool_errors_total: int = 0
        self.tool_call_counts: Dict[str, int] = {}
        self.tool_error_counts: Dict[str, int] = {}
        self.denials: int = 0
        self.outcomes: Counter = Counter()
        self.halt_reasons: Counter = Counter()
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def reset(self) -> None:
        self.turns = 0
        self.tool_calls_total = 0
        self.tool_errors_total = 0
        self.tool_call_counts.clear()
        self.tool_error_counts.clear()
        self.denials = 0
        self.outcomes.clear()
        self.halt_reasons.clear()
        self.start_time = None
        self.end_time = None

    def on_turn_start(self, data: Dict[str, Any]) -> None:
        self.turns += 1
        if self.start_time is None:
            self.start_time = time.time()

    def on_tool_after(self, data: Dict[str, Any]) -> None:
        tool_name = data.get("tool_name", "unknown")
        self.tool_calls_total += 1
        self.tool_call_counts[tool_name] = self.tool_call_counts.get(tool_name, 0) + 1
        if data.get("denied"):
            self.denials += 1
        elif not data.get("success", True):
            self.tool_errors_total += 1
            self.tool_error_counts[tool_name] = self.tool_error_counts.get(tool_name, 0) + 1

    def on_safety_verdict(self, data: Dict[str, Any]) -> None:
        if data.get("action") == "halt":
            self.halt_reasons[data.get("reason") or "unknown"] += 1

    def on_turn_end(self, data: Dict[str, Any]) -> None:
        self.end_time = time.time()
        self.outcomes[data.get("status") or "unknown"] += 1

    def summary(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "turns": self.turns,
            "tool_calls_total": self.tool_calls_total,
            "tool_errors_total": self.tool_errors_total,
            "tool_call_counts": dict(self.tool_call_counts),
            "tool_error_counts": dict(self.tool_error_counts),
            "denials": self.denials,
            "outcomes": dict(self.outcomes),
        }
        if self.start_time and self.end_time:
            result["duration_seconds"] = round(self.end_time - self.start_time, 2)
        if self.halt_reasons:
            result["halt_reasons"] = dict(self.halt_reasons)
        return result


def install() -> MetricsCollector:
    """Register metrics hooks and return the collector instance."""
    collector = MetricsCollector()
    hooks.register("turn_start", collector.on_turn_start)
    hooks.register("tool_after", collector.on_tool_after)
    hooks.register("safety_verdict", collector.on_safety_verdict)
    hooks.register("turn_end", collector.on_turn_end)
    return collector
