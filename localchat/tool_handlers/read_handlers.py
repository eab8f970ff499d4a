"""
File reading tool handler: read().
"""

import os
from typing import Any, Dict

from localchat.tool_handlers._path import to_display_path, validate_file_access
from localchat.tool_handlers._state import (
    MAX_FILE_SIZE,
    WorkingDirectory,
    _failure,
    _require_args_dict,
)


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer")
    if value < 1:
        raise ValueError(f"{name} must be >= 1")
    return value


def read(args: Any, cwd: WorkingDirectory) -> Dict[str, Any]:
    args, err = _require_args_dict(args, "read")
    if err:
        return _failure(err)
    path = validate_file_access(args.get("file_path"), cwd.path)
    display = to_display_path(path, cwd.path)

    if not os.path.exists(path):
        return _failure(f"File not found: {display}")
    if os.path.isdir(path):
        return _failure(f"Path is a directory, not a file: {display}")

    size = os.path.getsize(path)
    if size > MAX_FILE_SIZE:
        return _failure(f"File too large ({size} bytes, max {MAX_FILE_SIZE})")

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except UnicodeDecodeError:
        return _failure(f"File is not valid UTF-8 text: {display}")

    offset = args.get("offset")
    limit = args.get("limit")
    if offset is None and limit is None:
        return {
            "success": True,
            "content": content,
            "size": size,
            "lines": len(content.split("\n")),
        }

    lines = content.split("\n")
    start = _positive_int(offset, "offset") if offset is not None else 1
    count = _positive_int(limit, "limit") if limit is not None else len(lines)
    sliced = lines[start - 1:start - 1 + count]
    return {
        "success": True,
        "content": "\n".join(sliced),
        "lines_read": len(sliced),
        "total_lines": len(lines),
        "offset": start,
    }
