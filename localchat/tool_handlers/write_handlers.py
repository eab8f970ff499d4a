"""
File writing tool handlers: write(), edit().
"""

import os
from typing import Any, Dict

from localchat.tool_handlers._path import to_display_path, validate_file_access
from localchat.tool_handlers._state import WorkingDirectory, _failure, _require_args_dict


def write(args: Any, cwd: WorkingDirectory) -> Dict[str, Any]:
    args, err = _require_args_dict(args, "write")
    if err:
        return _failure(err)
    path = validate_file_access(args.get("file_path"), cwd.path)
    content = args.get("content")
    if not isinstance(content, str):
        return _failure("content is required and must be a string")
    if os.path.isdir(path):
        return _failure(f"Path is a directory: {to_display_path(path, cwd.path)}")

    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    data = content.encode("utf-8")
    with open(path, "wb") as f:
        f.write(data)
    return {
        "success": True,
        "message": f"File written successfully: {to_display_path(path, cwd.path)}",
        "bytes_written": len(data),
    }


def edit(args: Any, cwd: WorkingDirectory) -> Dict[str, Any]:
    """Replace old_string with new_string.

    old_string must occur exactly once unless replace_all is set, so an edit
    never lands somewhere the model did not mean.
    """
    args, err = _require_args_dict(args, "edit")
    if err:
        return _failure(err)
    path = validate_file_access(args.get("file_path"), cwd.path)
    display = to_display_path(path, cwd.path)
    old = args.get("old_string")
    new = args.get("new_string")
    replace_all = bool(args.get("replace_all", False))

    if not isinstance(old, str) or not old:
        return _failure("old_string is required and must be a non-empty string")
    if not isinstance(new, str):
        return _failure("new_string is required and must be a string")
    if old == new:
        return _failure("old_string and new_string are identical; nothing to change")
    if not os.path.isfile(path):
        return _failure(f"File not found: {display}")

    with open(path, "r", encoding="utf-8", newline="") as f:
        content = f.read()

    occurrences = content.count(old)
    if occurrences == 0:
        return _failure(f"String not found in file: {display}", occurrences=0)
    if occurrences > 1 and not replace_all:
        return _failure(
            f"String appears {occurrences} times in file. Use replace_all: true to replace "
            "all occurrences, or include more surrounding context to make it unique.",
            occurrences=occurrences,
        )

    updated = content.replace(old, new) if replace_all else content.replace(old, new, 1)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(updated)
    return {
        "success": True,
        "message": f"File edited successfully: {display}",
        "replacements_made": occurrences if replace_all else 1,
    }
