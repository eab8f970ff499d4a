"""
Retrieval context for outgoing requests.

The search collaborator is any callable search(query) returning
{"results": [{"text", "filePath", "score"}], "chunksCount", "sourcesCount"}
or {"error": True, "errorMessage": ...}. RetrievalGuard bounds it with a
timeout and switches retrieval off after repeated failures.
"""

import concurrent.futures
import time
from typing import Any, Callable, Dict, List, Optional

from localchat.history import ConversationHistory
from localchat.middleware.logging_hook import log_event

SearchFn = Callable[[str], Dict[str, Any]]

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_FAILURES = 3


class RetrievalError(Exception):
    pass


def format_context(results: List[Dict[str, Any]]) -> str:
    return "\n\n".join(
        f"[{i}] {r.get('text', '')}\n(Source: {r.get('filePath', 'unknown')})"
        for i, r in enumerate(results, 1)
    )


def inject_context(wire_messages: List[Dict[str, Any]], context: str) -> List[Dict[str, Any]]:
    """Wrap the last user message of a wire copy with retrieved context.

    Returns a new list; the message dicts that are not touched are shared.
    """
    out = list(wire_messages)
    for idx in range(len(out) - 1, -1, -1):
        if out[idx].get("role") == "user":
            msg = dict(out[idx])
            msg["content"] = (
                f"[CONTEXT - Retrieved from indexed documents]\n{context}\n[/CONTEXT]\n\n"
                f"User Question: {msg.get('content', '')}"
            )
            out[idx] = msg
            break
    return out


class RetrievalGuard:
    """Timeout and failure budget around a retrieval search callable."""

    def __init__(self, search: SearchFn, timeout: float = DEFAULT_TIMEOUT,
                 max_failures: int = DEFAULT_MAX_FAILURES):
        self.search = search
        self.timeout = timeout
        self.max_failures = max_failures
        self.consecutive_failures = 0
        self.enabled = True

    def _run_search(self, query: str) -> Dict[str, Any]:
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(self.search, query)
            try:
                data = future.result(timeout=self.timeout)
            except concurrent.futures.TimeoutError:
                raise RetrievalError(f"retrieval search timed out after {self.timeout:g}s")
        finally:
            pool.shutdown(wait=False)
        if not isinstance(data, dict):
            raise RetrievalError("retrieval search returned an unexpected response")
        if data.get("error"):
            raise RetrievalError(str(data.get("errorMessage") or "retrieval search failed"))
        return data

    def _record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        log_event("retrieval_error", {
            "error": error,
            "consecutive_failures": self.consecutive_failures,
        })
        if self.consecutive_failures >= self.max_failures:
            self.enabled = False
            log_event("retrieval_disabled", {"failures": self.consecutive_failures})

    def context_for(self, history: ConversationHistory) -> Optional[str]:
        """Context string for the next request, or None when there is nothing to add."""
        if not self.enabled:
            return None
        last = history.last()
        if last is None or last.role == "tool":
            return None
        query = next((m.content for m in reversed(history.messages) if m.role == "user"), "")
        if not query.strip():
            return None

        started = time.time()
        try:
            data = self._run_search(query)
        except Exception as exc:
            self._record_failure(str(exc) or type(exc).__name__)
            return None
        self.consecutive_failures = 0

        results = [r for r in data.get("results") or [] if isinstance(r, dict)]
        log_event("retrieval_search", {
            "results": len(results),
            "chunks": data.get("chunksCount"),
            "sources": data.get("sourcesCount"),
            "duration_ms": int((time.time() - started) * 1000),
        })
        if not results:
            return None
        return format_context(results)

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.enabled = True
