"""
Incremental parser for the /api/chat NDJSON response stream.

The server sends one JSON frame per line, but the transport delivers arbitrary
byte chunks, so a frame (or a multi-byte UTF-8 character) may be split across
reads. StreamIngester buffers partial lines and turns complete frames into
events. iter_events() drives it over a chunk iterator with abort support.
"""

import codecs
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from localchat.middleware.logging_hook import log_event


@dataclass
class Usage:
    prompt_tokens: Optional[int] = None
    response_tokens: Optional[int] = None


@dataclass
class ThinkingDelta:
    text: str


@dataclass
class ContentDelta:
    text: str


@dataclass
class ToolCallDelta:
    tool_calls: List[Dict[str, Any]]


@dataclass
class Done:
    content: str = ""
    thinking: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Usage] = None


@dataclass
class StreamError:
    cause: str
    content: str = ""
    thinking: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class Aborted:
    reason: str = "user"
    content: str = ""
    thinking: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)


StreamEvent = Union[ThinkingDelta, ContentDelta, ToolCallDelta, Done, StreamError, Aborted]
TERMINAL_EVENTS = (Done, StreamError, Aborted)


class StreamIngester:
    """Turns byte chunks into stream events and keeps the running totals."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.content = ""
        self.thinking = ""
        self.tool_calls: List[Dict[str, Any]] = []
        self.usage: Optional[Usage] = None
        self.finished = False
        self.dropped_frames = 0

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        if self.finished or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: List[StreamEvent] = []
        for line in lines:
            events.extend(self._apply_line(line, residual=False))
            if self.finished:
                break
        return events

    def finish(self) -> List[StreamEvent]:
        """Flush the residual buffer at end of input."""
        if self.finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        residual, self._buffer = self._buffer, ""
        events = self._apply_line(residual, residual=True) if residual.strip() else []
        if not self.finished:
            self.finished = True
            events.append(StreamError(
                "stream ended before the server reported completion",
                self.content, self.thinking, list(self.tool_calls),
            ))
        return events

    def abort(self, reason: str = "user") -> Aborted:
        self.finished = True
        return Aborted(reason, self.content, self.thinking, list(self.tool_calls))

    def fail(self, cause: str) -> StreamError:
        self.finished = True
        return StreamError(cause, self.content, self.thinking, list(self.tool_calls))

    def _apply_line(self, line: str, residual: bool) -> List[StreamEvent]:
        text = line.strip()
        if not text:
            return []
        try:
            frame = json.loads(text)
        except json.JSONDecodeError as exc:
            self.dropped_frames += 1
            log_event("stream_residual_dropped" if residual else "stream_frame_dropped", {
                "error": str(exc),
                "preview": text[:200],
            })
            return []
        if not isinstance(frame, dict):
            self.dropped_frames += 1
            log_event("stream_frame_dropped", {"error": "frame is not an object", "preview": text[:200]})
            return []
        return self._apply_frame(frame)

    def _apply_frame(self, frame: Dict[str, Any]) -> List[StreamEvent]:
        if frame.get("error"):
            return [self.fail(str(frame["error"]))]

        events: List[StreamEvent] = []
        message = frame.get("message") or {}
        if isinstance(message, dict):
            thinking = message.get("thinking")
            if isinstance(thinking, str) and thinking:
                self.thinking += thinking
                events.append(ThinkingDelta(thinking))
            content = message.get("content")
            if isinstance(content, str) and content:
                self.content += content
                events.append(ContentDelta(content))
            calls = message.get("tool_calls")
            if isinstance(calls, list) and calls:
                self.tool_calls.extend(calls)
                events.append(ToolCallDelta(list(calls)))

        if frame.get("done"):
            prompt_tokens = frame.get("prompt_eval_count")
            response_tokens = frame.get("eval_count")
            if prompt_tokens is not None or response_tokens is not None:
                self.usage = Usage(prompt_tokens, response_tokens)
            self.finished = True
            events.append(Done(self.content, self.thinking, list(self.tool_calls), self.usage))
        return events


def iter_events(
    chunks: Iterable[bytes],
    cancel: Optional[threading.Event] = None,
    abort_reason=None,
) -> Iterator[StreamEvent]:
    """Run a StreamIngester over chunks; always ends with exactly one terminal event.

    cancel is checked between chunks. A read that fails after cancel was set is
    reported as Aborted (closing the connection is how a blocked read is
    interrupted), any other read failure as StreamError. abort_reason, when
    given, is called to label the Aborted event.
    """
    ingester = StreamIngester()

    def _aborted() -> Aborted:
        return ingester.abort(abort_reason() if abort_reason else "user")

    try:
        for chunk in chunks:
            if cancel is not None and cancel.is_set():
                yield _aborted()
                return
            for event in ingester.feed(chunk):
                yield event
            if ingester.finished:
                return
    except (OSError, ValueError, AttributeError) as exc:
        if cancel is not None and cancel.is_set():
            yield _aborted()
        else:
            yield ingester.fail(f"connection lost: {exc}")
        return

    if cancel is not None and cancel.is_set():
        yield _aborted()
        return
    for event in ingester.finish():
        yield event
