"""Tests for the /api/chat client."""

import io
import json
import os
import sys
import urllib.error
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from localchat import hooks
from localchat.client import InferenceClient
from localchat.config import ModelOptions, Settings
from localchat.stream import Aborted, ContentDelta, Done, StreamError


class FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, status: int = 200):
        super().__init__(body)
        self.status = status


class ChunkedResponse:
    """Hands out one chunk per read, like a slow server."""

    status = 200

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False

    def read1(self, size=-1):
        if self.closed:
            raise ValueError("I/O operation on closed file")
        return self._chunks.pop(0) if self._chunks else b""

    def close(self):
        self.closed = True


def _ndjson(*frames):
    return "".join(json.dumps(f) + "\n" for f in frames).encode("utf-8")


class TestRequestBody:

    def setup_method(self):
        hooks.clear()

    def test_body_for_gpt_oss(self):
        client = InferenceClient(Settings(model="gpt-oss:20b", think="high"))
        tools = [{"type": "function", "function": {"name": "read"}}]
        body = client.build_request_body([{"role": "user", "content": "hi"}], tools)
        assert body["model"] == "gpt-oss:20b"
        assert body["stream"] is True
        assert body["tools"] == tools
        assert body["think"] == "high"
        assert "seed" not in body["options"]

    def test_body_without_tools_or_think(self):
        settings = Settings(model="qwen3:8b", options=ModelOptions(seed=3))
        body = InferenceClient(settings).build_request_body([], [])
        assert "tools" not in body
        assert "think" not in body
        assert body["options"]["seed"] == 3

    def test_open_stream_emits_request_start(self):
        seen = []
        hooks.register("request_start", seen.append)
        client = InferenceClient(Settings(), opener=MagicMock())
        client.open_stream([{"role": "user", "content": "hi"}], [])
        assert seen[0]["message_count"] == 1
        assert seen[0]["model"] == "gpt-oss:20b"


class TestStreamHandle:

    def setup_method(self):
        hooks.clear()

    def test_streams_events(self):
        body = _ndjson({"message": {"content": "Hel"}}, {"message": {"content": "lo"}}, {"done": True})
        opener = MagicMock(return_value=FakeResponse(body))
        client = InferenceClient(Settings(request_timeout=5), opener=opener)
        events = list(client.open_stream([{"role": "user", "content": "hi"}]).events())
        assert [e.text for e in events if isinstance(e, ContentDelta)] == ["Hel", "lo"]
        assert isinstance(events[-1], Done)
        request = opener.call_args[0][0]
        assert request.full_url == "http://localhost:11434/api/chat"
        assert json.loads(request.data)["messages"][0]["content"] == "hi"
        assert opener.call_args[1]["timeout"] == 5

    def test_http_error_carries_body(self):
        err = urllib.error.HTTPError(
            "http://localhost:11434/api/chat", 400, "Bad Request", {},
            io.BytesIO(b'{"error":"invalid tool_calls arguments"}'),
        )
        client = InferenceClient(Settings(), opener=MagicMock(side_effect=err))
        events = list(client.open_stream([]).events())
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert "status: 400" in events[0].cause
        assert "invalid tool_calls arguments" in events[0].cause

    def test_non_2xx_status_is_error(self):
        client = InferenceClient(Settings(), opener=MagicMock(return_value=FakeResponse(b"overloaded", 503)))
        events = list(client.open_stream([]).events())
        assert isinstance(events[0], StreamError)
        assert "503" in events[0].cause
        assert "overloaded" in events[0].cause

    def test_connection_refused(self):
        opener = MagicMock(side_effect=urllib.error.URLError(ConnectionRefusedError(111, "refused")))
        events = list(InferenceClient(Settings(), opener=opener).open_stream([]).events())
        assert isinstance(events[0], StreamError)
        assert events[0].cause.startswith("request failed")

    def test_abort_before_start(self):
        opener = MagicMock()
        handle = InferenceClient(Settings(), opener=opener).open_stream([])
        handle.abort("user")
        events = list(handle.events())
        assert isinstance(events[0], Aborted)
        opener.assert_not_called()

    def test_abort_mid_stream_keeps_partial(self):
        response = ChunkedResponse([
            _ndjson({"message": {"content": "partial"}}),
            _ndjson({"message": {"content": " more"}}),
            _ndjson({"done": True}),
        ])
        handle = InferenceClient(Settings(), opener=MagicMock(return_value=response)).open_stream([])
        events = []
        for event in handle.events():
            events.append(event)
            if isinstance(event, ContentDelta):
                handle.abort("user")
        assert isinstance(events[-1], Aborted)
        assert events[-1].content == "partial"
        assert handle.aborted
        assert response.closed

    def test_default_opener_is_urlopen(self):
        body = _ndjson({"done": True})
        with patch("urllib.request.urlopen", return_value=FakeResponse(body)) as mock_open:
            events = list(InferenceClient(Settings()).open_stream([]).events())
        assert mock_open.called
        assert isinstance(events[-1], Done)
