"""
HTTP client for the Ollama-compatible /api/chat streaming endpoint.
"""

import json
import threading
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterator, List, Optional

from localchat import hooks
from localchat.config import Settings, supports_think_level
from localchat.middleware.logging_hook import log_event
from localchat.stream import Aborted, StreamError, StreamEvent, iter_events

CHUNK_SIZE = 8192


def _iter_chunks(response: Any, size: int = CHUNK_SIZE) -> Iterator[bytes]:
    read = getattr(response, "read1", None) or response.read
    while True:
        chunk = read(size)
        if not chunk:
            return
        yield chunk


class StreamHandle:
    """One in-flight chat request.

    events() performs the request and yields stream events. abort() may be
    called from any thread; it closes the connection so a blocked read returns
    and the event sequence ends with Aborted.
    """

    def __init__(self, request: urllib.request.Request, timeout: float,
                 opener: Optional[Callable[..., Any]] = None):
        self._request = request
        self._timeout = timeout
        self._opener = opener or urllib.request.urlopen
        self._cancel = threading.Event()
        self._reason = "user"
        self._lock = threading.Lock()
        self._response: Any = None

    @property
    def aborted(self) -> bool:
        return self._cancel.is_set()

    @property
    def abort_reason(self) -> str:
        return self._reason

    def abort(self, reason: str = "user") -> None:
        with self._lock:
            if self._cancel.is_set():
                return
            self._reason = reason
            self._cancel.set()
            response = self._response
        if response is not None:
            try:
                response.close()
            except OSError:
                pass

    def events(self) -> Iterator[StreamEvent]:
        if self._cancel.is_set():
            yield Aborted(self._reason)
            return
        try:
            response = self._opener(self._request, timeout=self._timeout)
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", "replace")
            log_event("request_error", {"status": exc.code, "body": body[:500]})
            yield StreamError(f"HTTP error! status: {exc.code} - {body}")
            return
        except (urllib.error.URLError, OSError) as exc:
            if self._cancel.is_set():
                yield Aborted(self._reason)
                return
            reason = getattr(exc, "reason", exc)
            log_event("request_error", {"error": str(reason)})
            yield StreamError(f"request failed: {reason}")
            return

        with self._lock:
            self._response = response
            cancelled = self._cancel.is_set()
        try:
            if cancelled:
                yield Aborted(self._reason)
                return
            status = getattr(response, "status", 200)
            if status is not None and not 200 <= status < 300:
                body = response.read().decode("utf-8", "replace")
                log_event("request_error", {"status": status, "body": body[:500]})
                yield StreamError(f"HTTP error! status: {status} - {body}")
                return
            for event in iter_events(_iter_chunks(response), self._cancel, lambda: self._reason):
                yield event
        finally:
            try:
                response.close()
            except OSError:
                pass


class InferenceClient:
    """Builds /api/chat requests and opens streams against the configured endpoint."""

    def __init__(self, settings: Settings, opener: Optional[Callable[..., Any]] = None):
        self.settings = settings
        self._opener = opener

    def build_request_body(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        model = self.settings.model
        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "options": self.settings.options.to_request(),
        }
        if tools:
            body["tools"] = tools
        if self.settings.think and supports_think_level(model):
            body["think"] = self.settings.think
        return body

    def open_stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> StreamHandle:
        body = self.build_request_body(messages, tools)
        hooks.emit("request_start", {
            "model": body["model"],
            "message_count": len(messages),
            "tools": [t["function"]["name"] for t in tools or []],
            "options": body["options"],
            "think": body.get("think"),
            "request_body": body,
        })
        request = urllib.request.Request(
            self.settings.endpoint,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        return StreamHandle(request, self.settings.request_timeout, self._opener)
