"""
Loop safety checks run after every tool batch.

The agent loop re-prompts the model on its own, so nothing else stops a model
that keeps calling tools. SafetyGovernor looks only at the conversation
history and returns a Verdict: halt with a reason, or continue, optionally
with corrective user messages for the controller to append first.

Order of evaluation:
    1. context usage above the halt ratio          -> halt
    2. consecutive tool-only turns >= empty_halt_at -> halt
    3. total tool calls above max_tool_calls       -> halt
    4. last two tool calls identical               -> continue + one loop warning
    5. consecutive tool-only turns == 2 or 3       -> continue + reminder
       (plus a family-specific hint for nudge models)
Thinking is stripped from history for strip-thinking model families on
every continue verdict.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from localchat.config import GovernorSettings, context_limit_for
from localchat.history import ConversationHistory

CONTINUE = "continue"
HALT = "halt"

DUPLICATE_CALL_MESSAGE = (
    "You called the same tool twice with identical parameters. This suggests you may be "
    "stuck in a loop. Please provide your final answer based on the tool results you "
    "already have, or try a different approach."
)
EMPTY_REMINDER_MESSAGE = (
    "Based on the tool results above, please now provide your text response to my "
    "original question."
)
EMPTY_FORCE_MESSAGE = (
    "You MUST provide a text response now. Summarize the tool results and answer my "
    "question. Do not call more tools without providing text first."
)
MODEL_NUDGE_MESSAGE = (
    "Provide your final answer based on the tool results. Focus on answering the "
    "original question with the information you gathered."
)


@dataclass(frozen=True)
class Verdict:
    action: str
    reason: Optional[str] = None
    injected: Tuple[str, ...] = ()
    strip_thinking: bool = False
    layer: Optional[int] = None

    @property
    def halted(self) -> bool:
        return self.action == HALT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "reason": self.reason,
            "injected": len(self.injected),
            "strip_thinking": self.strip_thinking,
            "layer": self.layer,
        }


def estimate_tokens(wire_messages: List[Dict[str, Any]]) -> int:
    """Rough token count: four characters of serialized history per token."""
    return math.ceil(len(json.dumps(wire_messages, ensure_ascii=False)) / 4)


def count_consecutive_empty_turns(history: ConversationHistory) -> int:
    count = 0
    for msg in reversed(history.messages):
        if msg.role != "assistant":
            continue
        if not msg.is_empty_tool_turn:
            break
        count += 1
    return count


def last_tool_call_signatures(history: ConversationHistory, n: int = 2) -> List[Tuple[str, str]]:
    return [tc.signature() for tc in history.tool_calls()[-n:]]


@dataclass
class SafetyGovernor:
    settings: GovernorSettings = field(default_factory=GovernorSettings)
    model: str = ""
    num_ctx: Optional[int] = None
    context_limit: Callable[[str], int] = context_limit_for

    def _matches(self, prefixes: Tuple[str, ...]) -> bool:
        name = self.model.lower()
        return any(name.startswith(p) for p in prefixes)

    def context_ratio(self, history: ConversationHistory) -> float:
        limit = self.num_ctx or self.context_limit(self.model)
        if not limit:
            return 0.0
        return estimate_tokens(history.to_wire()) / limit

    def evaluate(self, history: ConversationHistory) -> Verdict:
        s = self.settings

        ratio = self.context_ratio(history)
        if ratio > s.context_halt_ratio:
            return Verdict(HALT, f"context critically full ({ratio * 100:.1f}% of the context window)", layer=1)

        empty = count_consecutive_empty_turns(history)
        if empty >= s.empty_halt_at:
            return Verdict(
                HALT,
                f"repeated tool-only turns without any text response ({empty} in a row)",
                layer=3,
            )

        total = len(history.tool_calls())
        if total > s.max_tool_calls:
            return Verdict(HALT, f"safety limit exceeded: {total} tool calls in this conversation", layer=5)

        strip = self._matches(s.strip_thinking_model_prefixes)

        recent = last_tool_call_signatures(history, 2)
        if len(recent) == 2 and recent[0] == recent[1]:
            return Verdict(CONTINUE, injected=(DUPLICATE_CALL_MESSAGE,), strip_thinking=strip, layer=2)

        injected: List[str] = []
        layer = None
        if empty == s.empty_reminder_at:
            injected.append(EMPTY_REMINDER_MESSAGE)
            layer = 3
        elif empty == s.empty_force_at:
            injected.append(EMPTY_FORCE_MESSAGE)
            layer = 3
        if empty >= s.empty_reminder_at and self._matches(s.nudge_model_prefixes):
            injected.append(MODEL_NUDGE_MESSAGE)
            layer = layer or 4
        return Verdict(CONTINUE, injected=tuple(injected), strip_thinking=strip, layer=layer)
