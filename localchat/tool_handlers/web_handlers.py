"""
Web tool handlers: web_search() and web_fetch() via Ollama's hosted API or a Searx instance.

Everything returned here passes through sanitize_web_result before it is
handed back to the model.
"""

import json
import re
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, Optional

from localchat.config import WebSettings
from localchat.middleware.logging_hook import log_event
from localchat.sanitize import sanitize_web_result
from localchat.tool_handlers._state import (
    WEB_FETCH_MAX_CHARS,
    WEB_SEARCH_DEFAULT_RESULTS,
    WEB_SEARCH_MAX_RESULTS,
    _failure,
    _require_args_dict,
)

OLLAMA_WEB_SEARCH_URL = "https://ollama.com/api/web_search"
OLLAMA_WEB_FETCH_URL = "https://ollama.com/api/web_fetch"
API_KEY_HELP = "Get a free API key at: https://ollama.com/settings/keys"
FETCH_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def html_to_text(html: str, limit: int = WEB_FETCH_MAX_CHARS) -> str:
    text = _SCRIPT_RE.sub("", html)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()[:limit]


def clamp_max_results(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return WEB_SEARCH_DEFAULT_RESULTS
    return min(max(int(value), 1), WEB_SEARCH_MAX_RESULTS)


class WebTools:
    """web_search / web_fetch for one conversation, including the search budget."""

    def __init__(self, settings: WebSettings, opener: Optional[Callable[..., Any]] = None):
        self.settings = settings
        self._opener = opener or urllib.request.urlopen
        self.search_count = 0

    @property
    def enabled(self) -> bool:
        return self.settings.provider in ("ollama", "searx")

    def reset(self) -> None:
        self.search_count = 0

    def _open(self, request: urllib.request.Request):
        return self._opener(request, timeout=self.settings.timeout)

    def web_search(self, args: Any) -> Dict[str, Any]:
        args, err = _require_args_dict(args, "web_search")
        if err:
            return _failure(err)
        query = args.get("query")
        if not isinstance(query, str) or not query.strip():
            return _failure("query is required and must be a non-empty string")
        limit = self.settings.max_searches_per_conversation
        if self.search_count >= limit:
            return _failure(
                f"WebSearch limit reached ({limit} searches per conversation). Answer from the "
                "results you already have, or ask the user to start a new conversation."
            )
        self.search_count += 1
        max_results = clamp_max_results(args.get("max_results"))
        log_event("web_search", {"provider": self.settings.provider, "max_results": max_results})
        if self.settings.provider == "searx":
            return self._searx_search(query, max_results)
        return self._ollama_call(OLLAMA_WEB_SEARCH_URL, {"query": query, "max_results": max_results})

    def web_fetch(self, args: Any) -> Dict[str, Any]:
        args, err = _require_args_dict(args, "web_fetch")
        if err:
            return _failure(err)
        url = args.get("url")
        if not isinstance(url, str) or urllib.parse.urlparse(url).scheme not in ("http", "https"):
            return _failure("url is required and must be an http or https URL")
        log_event("web_fetch", {"provider": self.settings.provider})
        if self.settings.provider == "searx":
            return self._direct_fetch(url)
        return self._ollama_call(OLLAMA_WEB_FETCH_URL, {"url": url})

    def _ollama_call(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        api_key = (self.settings.api_key or "").strip()
        if not api_key:
            return _failure(f"Ollama API Key is not set. Configure web.api_key in settings.\n\n{API_KEY_HELP}")
        request = urllib.request.Request(
            endpoint,
            data=json.dumps(body).encode("utf-8"),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with self._open(request) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code == 401:
                return _failure(f"Invalid API Key (401 Unauthorized). Check web.api_key in settings.\n\n{API_KEY_HELP}")
            return _failure(f"HTTP {exc.code}: {exc.read().decode('utf-8', 'replace')}")
        except urllib.error.URLError as exc:
            return _failure(f"Web tool request failed: {exc.reason}")
        if not isinstance(payload, dict):
            return _failure("Web tool returned an unexpected response")
        results = payload.get("results")
        if isinstance(results, list):
            payload["results"] = results[:WEB_SEARCH_MAX_RESULTS]
        out = {"success": True}
        out.update(sanitize_web_result(payload))
        return out

    def _searx_search(self, query: str, max_results: int) -> Dict[str, Any]:
        base = (self.settings.searx_url or "").strip().rstrip("/")
        if not base:
            return _failure("Searx server URL is not set. Configure web.searx_url, e.g. http://localhost:8888")
        url = f"{base}/search?q={urllib.parse.quote(query)}&format=json&categories=general"
        request = urllib.request.Request(url, headers={"Accept": "application/json"})
        try:
            with self._open(request) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return _failure(
                    f"Searx endpoint not found (404). Check that {base} is running and "
                    "allows format=json."
                )
            return _failure(f"HTTP {exc.code}: {exc.read().decode('utf-8', 'replace')}")
        except urllib.error.URLError as exc:
            return _failure(f"Failed to connect to Searx server at {base}: {exc.reason}")
        raw = payload.get("results") if isinstance(payload, dict) else None
        results = [
            {
                "title": r.get("title") or "No title",
                "url": r.get("url") or "",
                "content": r.get("content") or r.get("description") or "No description available",
            }
            for r in (raw or [])[:max_results]
            if isinstance(r, dict)
        ]
        return sanitize_web_result({"success": True, "results": results})

    def _direct_fetch(self, url: str) -> Dict[str, Any]:
        request = urllib.request.Request(url, headers={"User-Agent": FETCH_USER_AGENT})
        try:
            with self._open(request) as resp:
                charset = resp.headers.get_content_charset() or "utf-8"
                html = resp.read().decode(charset, "replace")
        except urllib.error.HTTPError as exc:
            return _failure(f"HTTP {exc.code}: Failed to fetch {url}")
        except urllib.error.URLError as exc:
            return _failure(f"Failed to fetch {url}: {exc.reason}")
        return sanitize_web_result({"success": True, "content": html_to_text(html), "url": url})
