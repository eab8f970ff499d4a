#!/usr/bin/env python3
"""Tests for the agent loop controller, driven by a scripted stream."""

import copy
import json
import os
import shutil
import sys
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from localchat import hooks
from localchat.agent import (
    CANCELLED,
    COMPLETED,
    ERROR,
    HALTED,
    IDLE,
    SKIPPED_AFTER_CANCEL,
    AgentLoopController,
)
from localchat.config import GovernorSettings, Settings
from localchat.governor import DUPLICATE_CALL_MESSAGE, SafetyGovernor
from localchat.history import STOPPED_MARKER, TIMED_OUT_MARKER, PinnedContext
from localchat.permissions import DENIED_MESSAGE, PermissionDecision, PermissionGate, PermissionPrompt
from localchat.stream import Aborted, ContentDelta, Done, StreamError, ThinkingDelta
from localchat.tool_handlers import ToolExecutor, WorkingDirectory


class FakeHandle:
    """Replays a list of events; block=True waits for abort() after the last one."""

    def __init__(self, events, block=False):
        self._events = list(events)
        self.block = block
        self.reason = None
        self._abort = threading.Event()

    def abort(self, reason="user"):
        if self.reason is None:
            self.reason = reason
        self._abort.set()

    def events(self):
        content = ""
        for event in self._events:
            if self._abort.is_set():
                yield Aborted(self.reason, content)
                return
            if isinstance(event, ContentDelta):
                content += event.text
            yield event
        if self.block:
            self._abort.wait(5)
            yield Aborted(self.reason or "user", content)


class ScriptedClient:
    """Stands in for InferenceClient; each open_stream() takes the next script."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.requests = []

    def open_stream(self, messages, tools=None):
        self.requests.append((copy.deepcopy(messages), tools))
        script = self.scripts.pop(0)
        return script if isinstance(script, FakeHandle) else FakeHandle(script)


def answer(text):
    return [ContentDelta(text), Done(content=text)]


def tool_calls(*calls):
    return [Done(tool_calls=[
        {"function": {"name": name, "arguments": args}} for name, args in calls
    ])]


class AgentTestCase(unittest.TestCase):

    def setUp(self):
        hooks.clear()
        self.tmpdir = os.path.realpath(tempfile.mkdtemp())
        self.settings = Settings(model="gpt-oss:20b")

    def tearDown(self):
        hooks.clear()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _controller(self, client, **kwargs):
        executor = ToolExecutor(self.settings, WorkingDirectory(self.tmpdir), platform="linux")
        kwargs.setdefault("gate", PermissionGate(self.tmpdir, self.settings.model))
        return AgentLoopController(self.settings, client=client, executor=executor, **kwargs)

    def _collect(self, event):
        seen = []
        hooks.register(event, seen.append)
        return seen

    def _path(self, name):
        return os.path.join(self.tmpdir, name)


class TestTextAnswer(AgentTestCase):

    def test_plain_answer_completes(self):
        client = ScriptedClient([ThinkingDelta("hmm"), ContentDelta("Hi "), ContentDelta("there"),
                                 Done(content="Hi there", thinking="hmm")])
        deltas = self._collect("stream_content")
        ends = self._collect("turn_end")
        controller = self._controller(client)

        outcome = controller.run_turn("hello")

        self.assertEqual(outcome.status, COMPLETED)
        self.assertEqual(outcome.content, "Hi there")
        self.assertEqual(outcome.iterations, 1)
        self.assertEqual([d["text"] for d in deltas], ["Hi ", "there"])
        self.assertEqual(ends[0]["status"], COMPLETED)
        self.assertEqual(controller.state, IDLE)
        last = controller.history.last()
        self.assertEqual((last.role, last.content, last.thinking), ("assistant", "Hi there", "hmm"))

    def test_thinking_is_not_sent_back(self):
        client = ScriptedClient(
            [Done(thinking="long private reasoning", tool_calls=[
                {"function": {"name": "read", "arguments": {"file_path": "a.txt"}}}
            ])],
            answer("done"),
        )
        controller = self._controller(client, decide=lambda req: PermissionDecision.ALLOW_ONCE)

        controller.run_turn("read a.txt")

        assistant = client.requests[1][0][1]
        self.assertEqual(assistant["role"], "assistant")
        self.assertNotIn("thinking", assistant)
        self.assertEqual(controller.history.messages[1].thinking, "long private reasoning")

    def test_request_carries_tool_declarations(self):
        client = ScriptedClient(answer("ok"))
        self._controller(client).run_turn("hello")
        messages, tools = client.requests[0]
        self.assertEqual(messages, [{"role": "user", "content": "hello"}])
        self.assertEqual([t["function"]["name"] for t in tools], ["read", "write", "edit", "bash"])

    def test_stream_error_ends_turn(self):
        client = ScriptedClient([ContentDelta("par"), StreamError("request failed with status: 500", "par")])
        controller = self._controller(client)
        outcome = controller.run_turn("hello")
        self.assertEqual(outcome.status, ERROR)
        self.assertEqual(outcome.reason, "request failed with status: 500")
        self.assertEqual(len(controller.history), 1)


class TestToolLoop(AgentTestCase):

    def test_tool_result_is_fed_back(self):
        client = ScriptedClient(
            tool_calls(("write", '{"file_path": "a.txt", "content": "hi"}')),
            answer("Wrote a.txt"),
        )
        controller = self._controller(client, decide=lambda req: PermissionDecision.ALLOW_ONCE)

        outcome = controller.run_turn("create a.txt")

        self.assertEqual(outcome.status, COMPLETED)
        self.assertEqual(outcome.iterations, 2)
        with open(self._path("a.txt"), "r", encoding="utf-8") as f:
            self.assertEqual(f.read(), "hi")
        self.assertEqual([m.role for m in controller.history], ["user", "assistant", "tool", "assistant"])
        second_request = client.requests[1][0]
        self.assertEqual(second_request[1]["tool_calls"][0]["function"]["arguments"],
                         {"file_path": "a.txt", "content": "hi"})
        self.assertEqual(second_request[2]["tool_name"], "write")
        self.assertTrue(json.loads(second_request[2]["content"])["success"])

    def test_no_decider_denies(self):
        client = ScriptedClient(tool_calls(("write", {"file_path": "a.txt", "content": "hi"})), answer("ok"))
        after = self._collect("tool_after")
        controller = self._controller(client)

        controller.run_turn("create a.txt")

        self.assertFalse(os.path.exists(self._path("a.txt")))
        tool_msg = controller.history.messages[2]
        self.assertEqual(json.loads(tool_msg.content), {"success": False, "message": DENIED_MESSAGE})
        self.assertTrue(after[0]["denied"])

    def test_allow_always_is_remembered(self):
        decide = MagicMock(return_value=PermissionDecision.ALLOW_ALWAYS)
        client = ScriptedClient(
            tool_calls(("write", {"file_path": "a.txt", "content": "1"})),
            tool_calls(("write", {"file_path": "b.txt", "content": "2"})),
            answer("done"),
        )
        controller = self._controller(client, decide=decide)

        outcome = controller.run_turn("write two files")

        self.assertEqual(outcome.status, COMPLETED)
        self.assertEqual(decide.call_count, 1)
        self.assertTrue(os.path.exists(self._path("b.txt")))
        self.assertTrue(PermissionGate(self.tmpdir, "gpt-oss:20b").is_allowed("write", {}))

    def test_permission_request_hook(self):
        requests = self._collect("permission_request")
        client = ScriptedClient(tool_calls(("bash", {"command": "ls -la"})), answer("ok"))
        self._controller(client, decide=lambda req: PermissionDecision.DENY).run_turn("list")
        self.assertEqual(requests[0]["fingerprint"], "bash:ls")

    def test_invalid_decision_is_denied(self):
        client = ScriptedClient(tool_calls(("write", {"file_path": "a.txt", "content": "x"})), answer("ok"))
        self._controller(client, decide=lambda req: "sure").run_turn("go")
        self.assertFalse(os.path.exists(self._path("a.txt")))

    def test_invalid_tool_is_answered_without_prompt(self):
        decide = MagicMock(return_value=PermissionDecision.ALLOW_ONCE)
        client = ScriptedClient(tool_calls(("teleport", {"to": "mars"})), answer("sorry"))
        controller = self._controller(client, decide=decide)

        outcome = controller.run_turn("go to mars")

        self.assertEqual(outcome.status, COMPLETED)
        decide.assert_not_called()
        result = json.loads(controller.history.messages[2].content)
        self.assertFalse(result["success"])
        self.assertTrue(result["error"].startswith('INVALID_TOOL: Tool "teleport" does not exist.'))

    def test_duplicate_call_warning_is_injected(self):
        read_call = ("read", {"file_path": "missing.txt"})
        client = ScriptedClient(tool_calls(read_call), tool_calls(read_call), answer("gave up"))
        controller = self._controller(client, decide=lambda req: PermissionDecision.ALLOW_ONCE)

        controller.run_turn("read it")

        third_request = client.requests[2][0]
        self.assertEqual(third_request[-1], {"role": "user", "content": DUPLICATE_CALL_MESSAGE})
        self.assertEqual(sum(1 for m in third_request if m["content"] == DUPLICATE_CALL_MESSAGE), 1)

    def test_governor_halt(self):
        governor = SafetyGovernor(GovernorSettings(max_tool_calls=1), "gpt-oss:20b", 4096)
        client = ScriptedClient(tool_calls(("read", {"file_path": "a"}), ("read", {"file_path": "b"})))
        verdicts = self._collect("safety_verdict")
        controller = self._controller(client, decide=lambda req: PermissionDecision.ALLOW_ONCE,
                                      governor=governor)

        outcome = controller.run_turn("read both")

        self.assertEqual(outcome.status, HALTED)
        self.assertEqual(outcome.reason, "safety limit exceeded: 2 tool calls in this conversation")
        self.assertEqual(len(client.requests), 1)
        self.assertEqual(verdicts[0]["action"], "halt")


class TestCancellation(AgentTestCase):

    def test_cancel_mid_stream_keeps_partial(self):
        handle = FakeHandle([ContentDelta("partial")], block=True)
        client = ScriptedClient(handle)
        controller = self._controller(client)
        hooks.register("stream_content", lambda data: controller.cancel())

        outcome = controller.run_turn("write an essay")

        self.assertEqual(outcome.status, CANCELLED)
        self.assertEqual(handle.reason, "user")
        self.assertEqual(outcome.content, "partial" + STOPPED_MARKER)
        self.assertEqual(controller.history.last().content, "partial" + STOPPED_MARKER)
        self.assertTrue(controller.cancelled)

    def test_cancel_between_tools_skips_the_rest(self):
        client = ScriptedClient(tool_calls(
            ("write", {"file_path": "first.txt", "content": "1"}),
            ("write", {"file_path": "second.txt", "content": "2"}),
        ))
        controller = None

        def decide(request):
            controller.cancel()
            return PermissionDecision.ALLOW_ONCE

        controller = self._controller(client, decide=decide)
        outcome = controller.run_turn("write both")

        self.assertEqual(outcome.status, CANCELLED)
        self.assertTrue(os.path.exists(self._path("first.txt")))
        self.assertFalse(os.path.exists(self._path("second.txt")))
        skipped = json.loads(controller.history.last().content)
        self.assertEqual(skipped["error"], SKIPPED_AFTER_CANCEL)
        # every call still has a result
        self.assertEqual([m.role for m in controller.history], ["user", "assistant", "tool", "tool"])

    def test_cancel_during_last_tool_stops_the_loop(self):
        client = ScriptedClient(tool_calls(("write", {"file_path": "only.txt", "content": "1"})), answer("more"))
        verdicts = self._collect("safety_verdict")
        controller = None

        def decide(request):
            controller.cancel()
            return PermissionDecision.ALLOW_ONCE

        controller = self._controller(client, decide=decide)
        outcome = controller.run_turn("write one")

        self.assertEqual(outcome.status, CANCELLED)
        self.assertEqual(verdicts, [])
        self.assertEqual(len(client.requests), 1)
        self.assertEqual([m.role for m in controller.history], ["user", "assistant", "tool"])

    def test_cancel_without_partial_content_adds_nothing(self):
        handle = FakeHandle([ThinkingDelta("let me think")], block=True)
        controller = self._controller(ScriptedClient(handle))
        hooks.register("stream_thinking", lambda data: controller.cancel())

        outcome = controller.run_turn("hello")

        self.assertEqual(outcome.status, CANCELLED)
        self.assertEqual(outcome.content, "")
        self.assertEqual([m.role for m in controller.history], ["user"])

    def test_cancelled_prompt_is_reset_for_next_turn(self):
        prompt = PermissionPrompt()
        client = ScriptedClient(tool_calls(("write", {"file_path": "a.txt", "content": "x"})), answer("ok"))
        controller = self._controller(client, decide=prompt)
        controller.cancel()

        def worker():
            if prompt.wait_for_request(timeout=5) is not None:
                prompt.answer(PermissionDecision.ALLOW_ONCE)

        t = threading.Thread(target=worker)
        t.start()
        outcome = controller.run_turn("write a.txt")
        t.join(timeout=5)

        self.assertEqual(outcome.status, COMPLETED)
        self.assertTrue(os.path.exists(self._path("a.txt")))

    def test_cancel_releases_prompt(self):
        decide = MagicMock(return_value=PermissionDecision.DENY)
        controller = self._controller(ScriptedClient(), decide=decide)
        controller.cancel()
        decide.cancel.assert_called_once_with()

    def test_next_turn_starts_uncancelled(self):
        controller = self._controller(ScriptedClient(answer("fine")))
        controller.cancel()
        self.assertEqual(controller.run_turn("again").status, COMPLETED)

    def test_iteration_timeout(self):
        self.settings = Settings(model="gpt-oss:20b", iteration_timeout=0.2)
        handle = FakeHandle([], block=True)
        controller = self._controller(ScriptedClient(handle))

        outcome = controller.run_turn("slow")

        self.assertEqual(handle.reason, "timeout")
        self.assertEqual(outcome.status, HALTED)
        self.assertEqual(outcome.reason, "iteration timed out after 0.2 s")
        self.assertEqual(controller.history.last().content, TIMED_OUT_MARKER)


class TestRequestContext(AgentTestCase):

    def test_pinned_and_retrieval_are_request_only(self):
        self.settings = Settings(model="gpt-oss:20b", rag_enabled=True)
        search = MagicMock(return_value={"results": [{"text": "Alpha is 42.", "filePath": "notes.md"}]})
        pinned = PinnedContext()
        pinned.pin("user", "Answer tersely.")
        client = ScriptedClient(tool_calls(("read", {"file_path": "x"})), answer("42"))
        controller = self._controller(client, decide=lambda req: PermissionDecision.ALLOW_ONCE,
                                      search=search, pinned=pinned)

        controller.run_turn("what is alpha?")

        first = client.requests[0][0]
        self.assertEqual(first[0], {"role": "system", "content": "[PINNED USER] Answer tersely."})
        self.assertIn("Alpha is 42.", first[1]["content"])
        self.assertTrue(first[1]["content"].endswith("User Question: what is alpha?"))
        self.assertEqual(search.call_count, 1)
        self.assertEqual(controller.history.messages[0].content, "what is alpha?")
        second = client.requests[1][0]
        self.assertEqual(second[1]["content"], "what is alpha?")

    def test_retrieval_off_without_flag(self):
        search = MagicMock()
        controller = self._controller(ScriptedClient(answer("ok")), search=search)
        controller.run_turn("hi")
        search.assert_not_called()

    def test_session_autosave(self):
        path = self._path("sessions/chat.json")
        os.makedirs(os.path.dirname(path))
        controller = self._controller(ScriptedClient(answer("saved")), session_path=path)
        controller.run_turn("hi")
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual([m["role"] for m in data["messages"]], ["user", "assistant"])

    def test_new_conversation_clears(self):
        controller = self._controller(ScriptedClient(answer("ok")))
        controller.run_turn("hi")
        controller.new_conversation()
        self.assertEqual(len(controller.history), 0)

    def test_close_kills_processes(self):
        controller = self._controller(ScriptedClient())
        controller.close()
        self.assertEqual(len(controller.executor.processes), 0)


if __name__ == "__main__":
    unittest.main()
