"""
Tool handlers package: filesystem, shell and web tools plus their executor.
"""

from localchat.tool_handlers._path import (
    PathAccessError,
    is_credential_file,
    validate_file_access,
    validate_path_within_working_directory,
)
from localchat.tool_handlers._sandbox import (
    check_credential_exposure,
    is_credential_sensitive,
    scrubbed_environment,
)
from localchat.tool_handlers._state import WorkingDirectory
from localchat.tool_handlers.dispatch import ToolExecutor
from localchat.tool_handlers.schema import (
    SYSTEM_TOOL_NAMES,
    TOOL_DEFINITIONS,
    WEB_TOOL_NAMES,
    build_registry,
    make_tool_declarations,
)
from localchat.tool_handlers.shell_handler import ProcessRegistry
from localchat.tool_handlers.translate import translate_command
from localchat.tool_handlers.web_handlers import WebTools

__all__ = [
    "PathAccessError",
    "ProcessRegistry",
    "SYSTEM_TOOL_NAMES",
    "TOOL_DEFINITIONS",
    "ToolExecutor",
    "WEB_TOOL_NAMES",
    "WebTools",
    "WorkingDirectory",
    "build_registry",
    "check_credential_exposure",
    "is_credential_file",
    "is_credential_sensitive",
    "make_tool_declarations",
    "scrubbed_environment",
    "translate_command",
    "validate_file_access",
    "validate_path_within_working_directory",
]
