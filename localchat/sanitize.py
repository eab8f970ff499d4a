"""
Text scrubbing for content crossing a trust boundary.

sanitize_text() cleans externally fetched web content before it re-enters the
conversation (invisible Unicode is a prompt-injection vector). redact_credentials()
masks secrets before a chat is written to disk.
"""

import re
import unicodedata
from typing import Any

# Unicode tag block, zero-width, bidi override/isolate and C0/C1 controls
# (tab, newline and carriage return survive).
_INVISIBLE_RE = re.compile(
    "["
    "\U000E0000-\U000E007F"
    "\u200B-\u200D\u2060\uFEFF"
    "\u202A-\u202E\u2066-\u2069"
    "\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F"
    "]"
)

_CREDENTIAL_PATTERNS = [
    (re.compile(r"P4PASSWD=[^\s]+"), "P4PASSWD=***"),
    (re.compile(r"-P\s+\w+"), "-P ***"),
    (re.compile(r"\b(password|passwd)[=:]\s*[^\s\"',;]+", re.IGNORECASE), r"\1=***"),
    (re.compile(r"\b(AWS_SECRET_ACCESS_KEY|GH_TOKEN|GITHUB_TOKEN)=[^\s]+"), r"\1=***"),
]


def sanitize_text(text: str) -> str:
    if not text:
        return text
    normalized = unicodedata.normalize("NFKC", text)
    return _INVISIBLE_RE.sub("", normalized)


def sanitize_web_result(value: Any) -> Any:
    """Apply sanitize_text to every string inside a decoded JSON value."""
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {k: sanitize_web_result(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_web_result(v) for v in value]
    return value


def redact_credentials(text: str) -> str:
    if not text:
        return text
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        text = pattern.sub(replacement, text)
    return text
