"""
Shell command defenses: destructive and credential-exposure patterns, env scrubbing.

Stdlib only; no imports from other tool_handlers modules.
"""

import os
import re
from typing import Dict, Mapping, Optional


# Destructive commands (soft sandbox)
DANGEROUS_PATTERNS = [
    r"rm\s+(-[rf]+\s+)*(/|~|\$HOME|/\*)(\s|$)",
    r"rm\s+.*\s+(/etc|/usr|/bin|/lib|/boot|/var|/sys|/proc)(/|\s|$)",
    r"dd\s+.*of=/dev/",
    r"mkfs\.",
    r"chmod\s+(-R\s+)?(777|666)\s+/(\s|$)",
    r":\(\)\s*\{",
    r"(curl|wget).*\|\s*(ba|z)?sh",
    r"(?:\d\s*)?>{1,2}\s*/(?:etc|usr|bin|lib|boot|sys|proc)/",
]
_DANGEROUS_COMMAND_RES = [re.compile(p, re.IGNORECASE) for p in DANGEROUS_PATTERNS]

# Commands that would put a secret on the command line or dump one into output.
CREDENTIAL_EXPOSURE_PATTERNS = [
    ("inline password", re.compile(r"-P\s+\w+")),
    ("inline password", re.compile(r"--password[=\s]", re.IGNORECASE)),
    ("inline password", re.compile(r"P4PASSWD=", re.IGNORECASE)),
    ("inline password", re.compile(r"\bpasswd[=\s]", re.IGNORECASE)),
    ("secret variable", re.compile(r"AWS_SECRET_ACCESS_KEY", re.IGNORECASE)),
    ("environment dump", re.compile(r"(^|[;&|(]\s*)(env|printenv|set|export\s+-p)\s*($|[;&|)>])")),
    ("environment dump", re.compile(r"\bprintenv\b")),
    ("credential file", re.compile(r"\.p4config\b")),
    ("credential file", re.compile(r"\.git-credentials\b")),
    ("credential file", re.compile(r"(^|[\s/'\"=])\.netrc\b")),
    ("credential file", re.compile(r"\.ssh/")),
    ("credential file", re.compile(r"\.aws/credentials\b")),
    ("credential file", re.compile(r"settings\.local\.json")),
    ("credential file", re.compile(r"(^|[\s/'\"=])\.env(\.local)?(\s|$|['\";|&>])")),
]

# Commands that are fine to run but must be confirmed every time; the
# permission gate never persists an allow for them.
CREDENTIAL_SENSITIVE_PATTERNS = [
    re.compile(r"\benv\b", re.IGNORECASE),
    re.compile(r"\bprintenv\b", re.IGNORECASE),
    re.compile(r"\bexport\s+P4", re.IGNORECASE),
    re.compile(r"\bps\s+.*e", re.IGNORECASE),
    re.compile(r"\.p4config"),
    re.compile(r"P4PASSWD", re.IGNORECASE),
    re.compile(r"settings\.local\.json"),
]

SECRET_ENV_VARS = (
    "P4PASSWD",
    "P4USER",
    "P4PORT",
    "P4CLIENT",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "GH_TOKEN",
    "GITHUB_TOKEN",
)


def _check_dangerous_command(command: str) -> Optional[str]:
    for pattern_re in _DANGEROUS_COMMAND_RES:
        if pattern_re.search(command):
            return pattern_re.pattern
    return None


def check_credential_exposure(command: str) -> Optional[str]:
    """Return the kind of credential exposure command risks, or None."""
    for kind, pattern_re in CREDENTIAL_EXPOSURE_PATTERNS:
        if pattern_re.search(command):
            return kind
    return None


def is_credential_sensitive(command: str) -> bool:
    return any(p.search(command or "") for p in CREDENTIAL_SENSITIVE_PATTERNS)


def scrubbed_environment(base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy of base (default os.environ) without the secret variables."""
    env = dict(os.environ if base is None else base)
    for name in SECRET_ENV_VARS:
        env.pop(name, None)
    return env
