"""
Path containment and credential-file checks for filesystem handlers.
"""

import os
from typing import Optional

# Basenames that hold secrets; refused even inside the working directory.
CREDENTIAL_FILENAMES = frozenset({
    ".p4config",
    ".git-credentials",
    ".netrc",
    "settings.local.json",
    ".env",
    ".env.local",
})

# Multi-component credential locations, matched against the path tail.
CREDENTIAL_PATH_SUFFIXES = (
    os.path.join(".ssh", "config"),
    os.path.join(".aws", "credentials"),
)


class PathAccessError(ValueError):
    """A path argument escapes the working directory or names a credential file."""


def _is_path_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def validate_path_within_working_directory(file_path: Optional[str], working_directory: str) -> str:
    """Resolve file_path against working_directory and require containment.

    Returns the resolved absolute path. Raises PathAccessError for paths that
    escape via `..`, absolute overrides or symlinks.
    """
    if not file_path or not isinstance(file_path, str):
        raise PathAccessError("file_path is required")
    root = os.path.realpath(working_directory)
    candidate = os.path.normpath(os.path.join(root, os.path.expanduser(file_path)))
    resolved = os.path.realpath(candidate)
    if not _is_path_within(candidate, root) or not _is_path_within(resolved, root):
        raise PathAccessError(
            f"Access denied: path '{file_path}' is outside the working directory {root}"
        )
    return resolved


def is_credential_file(path: str) -> bool:
    normalized = os.path.normpath(path)
    if os.path.basename(normalized) in CREDENTIAL_FILENAMES:
        return True
    return any(normalized.endswith(os.sep + suffix) or normalized == suffix
               for suffix in CREDENTIAL_PATH_SUFFIXES)


def validate_file_access(file_path: Optional[str], working_directory: str) -> str:
    """Containment plus the credential-file denylist. Returns the resolved path."""
    resolved = validate_path_within_working_directory(file_path, working_directory)
    if is_credential_file(resolved):
        raise PathAccessError(
            f"Access denied: '{os.path.basename(resolved)}' may contain credentials"
        )
    return resolved


def to_display_path(path: str, working_directory: str) -> str:
    """Path relative to the working directory for tool output."""
    try:
        rel = os.path.relpath(path, working_directory)
    except ValueError:
        return path
    if rel == ".":
        return "."
    return rel.replace(os.sep, "/")
