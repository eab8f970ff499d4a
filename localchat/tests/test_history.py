"""Tests for the conversation model and its wire form."""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from localchat.history import (
    ConversationHistory,
    Message,
    PinnedContext,
    ToolCallRequest,
    ToolResult,
    coerce_arguments,
    ensure_argument_object,
    message_from_wire,
    message_to_wire,
    strip_reasoning_markup,
)


class TestArguments:

    def test_coerce_string_and_object_agree(self):
        as_string = coerce_arguments('{"file_path": "a.txt", "limit": 5}')
        as_object = coerce_arguments({"file_path": "a.txt", "limit": 5})
        assert as_string == as_object == {"file_path": "a.txt", "limit": 5}

    def test_coerce_copies_dict(self):
        original = {"nested": {"a": 1}}
        copied = coerce_arguments(original)
        copied["nested"]["a"] = 2
        assert original["nested"]["a"] == 1

    def test_coerce_empty(self):
        assert coerce_arguments(None) == {}
        assert coerce_arguments("   ") == {}

    def test_coerce_rejects_non_object(self):
        with pytest.raises(ValueError):
            coerce_arguments("[1, 2]")
        with pytest.raises(ValueError):
            coerce_arguments(42)
        with pytest.raises(ValueError):
            coerce_arguments("{broken")

    def test_ensure_argument_object_never_raises(self):
        assert ensure_argument_object('{"a": 1}') == {"a": 1}
        assert ensure_argument_object("not json") == {}
        assert ensure_argument_object([1]) == {}


class TestToolResult:

    def test_from_handler_success(self):
        result = ToolResult.from_handler({"success": True, "content": "hi", "size": 2})
        assert result.success
        assert result.payload == {"content": "hi", "size": 2}
        assert result.error is None

    def test_from_handler_failure(self):
        result = ToolResult.from_handler({"success": False, "error": "nope", "occurrences": 2})
        assert not result.success
        assert result.error == "nope"
        assert json.loads(result.to_content()) == {"success": False, "occurrences": 2, "error": "nope"}

    def test_failure_without_error_gets_one(self):
        result = ToolResult.from_handler({"success": False})
        assert result.error

    def test_message_only_failure_keeps_message(self):
        result = ToolResult(False, {"message": "DENIED_BY_USER: no"})
        assert result.to_dict() == {"success": False, "message": "DENIED_BY_USER: no"}


class TestMessage:

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            Message("robot", "hi")

    def test_tool_calls_only_on_assistant(self):
        with pytest.raises(ValueError):
            Message("user", "hi", tool_calls=(ToolCallRequest("c1", "read"),))

    def test_tool_name_only_on_tool(self):
        with pytest.raises(ValueError):
            Message("assistant", "hi", tool_name="read")

    def test_empty_tool_turn(self):
        call = ToolCallRequest("c1", "read", {"file_path": "a"})
        assert Message("assistant", "  ", tool_calls=(call,)).is_empty_tool_turn
        assert not Message("assistant", "text", tool_calls=(call,)).is_empty_tool_turn
        assert not Message("assistant", "").is_empty_tool_turn


class TestConversationHistory:

    def setup_method(self):
        self.history = ConversationHistory()
        self.call = ToolCallRequest("call_0", "read", {"file_path": "a.txt"})

    def test_tool_result_requires_matching_call(self):
        self.history.append_user("hi")
        with pytest.raises(ValueError):
            self.history.append_tool_result(self.call, ToolResult.ok(content="x"))

    def test_tool_result_after_call(self):
        self.history.append_user("read a.txt")
        self.history.append_assistant("", [self.call])
        msg = self.history.append_tool_result(self.call, ToolResult.ok(content="x"))
        assert msg.role == "tool"
        assert msg.tool_name == "read"
        assert msg.tool_call_id == "call_0"
        assert len(self.history) == 3
        assert self.history.tool_calls() == [self.call]

    def test_messages_snapshot_is_immutable(self):
        self.history.append_user("hi")
        snapshot = self.history.messages
        self.history.append_user("again")
        assert len(snapshot) == 1

    def test_strip_thinking(self):
        self.history.append_user("q")
        self.history.append_assistant("<think>plan</think>Answer", thinking="deep thoughts")
        self.history.append_assistant("plain")
        changed = self.history.strip_thinking()
        assert changed == 1
        first = self.history.messages[1]
        assert first.content == "Answer"
        assert first.thinking is None
        assert self.history.messages[2].content == "plain"

    def test_wire_copy_is_independent(self):
        self.history.append_user("question")
        wire = self.history.to_wire()
        wire[0]["content"] = "changed"
        assert self.history.messages[0].content == "question"

    def test_clear(self):
        self.history.append_user("x")
        self.history.clear()
        assert len(self.history) == 0
        assert self.history.last() is None


class TestWireForm:

    def test_assistant_tool_calls_are_objects(self):
        msg = Message("assistant", "", tool_calls=(ToolCallRequest("c1", "bash", {"command": "ls"}),),
                      thinking="t")
        wire = message_to_wire(msg)
        assert wire == {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "bash", "arguments": {"command": "ls"}}}],
        }

    def test_thinking_stays_out_of_wire_form(self):
        history = ConversationHistory()
        history.append_user("q")
        history.append_assistant("Answer", thinking="long private reasoning")
        wire = history.to_wire()
        assert wire[1] == {"role": "assistant", "content": "Answer"}
        assert history.messages[1].thinking == "long private reasoning"

    def test_string_arguments_fixed_at_wire_boundary(self):
        # a call that slipped past normalization with string arguments
        call = ToolCallRequest("c1", "bash", '{"command": "ls"}')
        wire = message_to_wire(Message("assistant", "", tool_calls=(call,)))
        assert wire["tool_calls"][0]["function"]["arguments"] == {"command": "ls"}

    def test_tool_message_fields(self):
        wire = message_to_wire(Message("tool", "{}", tool_name="read", tool_call_id="c1"))
        assert wire == {"role": "tool", "content": "{}", "tool_name": "read"}

    def test_round_trip_keeps_argument_objects(self):
        history = ConversationHistory()
        history.append_user("go")
        history.append_assistant("", [
            ToolCallRequest("c1", "read", {"file_path": "a"}),
            ToolCallRequest("c2", "bash", {"command": "ls -la", "timeout": 500}),
        ])
        wire = history.to_wire()
        restored = ConversationHistory.from_wire(json.loads(json.dumps(wire)))
        for tc in restored.tool_calls():
            assert isinstance(tc.arguments, dict)
        assert restored.to_wire() == wire

    def test_from_wire_decodes_string_arguments(self):
        msg = message_from_wire({
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "read", "arguments": '{"file_path": "x"}'}}],
        }, index=4)
        assert msg.tool_calls[0].arguments == {"file_path": "x"}
        assert msg.tool_calls[0].id == "call_4_0"


class TestStripReasoningMarkup:

    def test_think_blocks(self):
        assert strip_reasoning_markup("<think>a\nb</think> done") == "done"

    def test_channel_spans(self):
        text = "<|channel|>analysis<|message|>hmm<|channel|>final<|message|>Result"
        assert strip_reasoning_markup(text) == "Result"

    def test_plain_text_untouched(self):
        assert strip_reasoning_markup("hello") == "hello"


class TestPinnedContext:

    def test_limit_and_duplicates(self):
        pins = PinnedContext(limit=2)
        assert pins.pin("user", "a")
        assert not pins.pin("user", "a")
        assert pins.pin("assistant", "b")
        assert not pins.pin("user", "c")
        assert len(pins) == 2

    def test_system_message(self):
        pins = PinnedContext()
        assert pins.as_system_message() is None
        pins.pin("user", "use tabs")
        pins.pin("assistant", "ok")
        assert pins.as_system_message() == {
            "role": "system",
            "content": "[PINNED USER] use tabs\n\n[PINNED ASSISTANT] ok",
        }

    def test_unpin(self):
        pins = PinnedContext()
        pins.pin("user", "a")
        assert not pins.unpin(3)
        assert pins.unpin(0)
        assert len(pins) == 0
