"""
Tool declarations: the registry the model picks from, and its /api/chat form.

Parameter specs use the compact form "type" or "type?" (optional), or a dict
with "type", "description" and optional "optional"/"minimum"/"maximum".
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

SYSTEM_TOOL_NAMES = ("read", "write", "edit", "bash")
WEB_TOOL_NAMES = ("web_search", "web_fetch")

TOOL_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "read": {
        "description": (
            "Read a text file inside the working directory. Use offset (1-based line "
            "number) and limit to read part of a large file."
        ),
        "parameters": {
            "file_path": {"type": "string", "description": "Path relative to the working directory"},
            "offset": {"type": "integer?", "description": "First line to read (1-based)", "minimum": 1},
            "limit": {"type": "integer?", "description": "Number of lines to read", "minimum": 1},
        },
    },
    "write": {
        "description": "Create or overwrite a file with the given content. Parent directories are created.",
        "parameters": {
            "file_path": {"type": "string", "description": "Path relative to the working directory"},
            "content": {"type": "string", "description": "Full file content"},
        },
    },
    "edit": {
        "description": (
            "Replace old_string with new_string in a file. old_string must match exactly "
            "and occur once, unless replace_all is true."
        ),
        "parameters": {
            "file_path": {"type": "string", "description": "Path relative to the working directory"},
            "old_string": {"type": "string", "description": "Exact text to replace"},
            "new_string": {"type": "string", "description": "Replacement text"},
            "replace_all": {"type": "boolean?", "description": "Replace every occurrence", "default": False},
        },
    },
    "bash": {
        "description": (
            "Run a shell command in the working directory. `cd <dir>` changes the working "
            "directory for later calls. Commands are translated for Windows where possible."
        ),
        "parameters": {
            "command": {"type": "string", "description": "Command line to execute"},
            "timeout": {"type": "integer?", "description": "Timeout in milliseconds (default 120000)", "minimum": 1},
            "description": {"type": "string?", "description": "Short note on what the command does"},
        },
    },
    "web_search": {
        "description": (
            "Search the web for current information. Returns titles, URLs and snippets. "
            "Prefer answering from snippets; searches per conversation are limited."
        ),
        "parameters": {
            "query": {"type": "string", "description": "Specific search query"},
            "max_results": {"type": "integer?", "description": "Results to return (default 5, max 10)",
                            "minimum": 1, "maximum": 10},
        },
    },
    "web_fetch": {
        "description": "Fetch the text of a web page. Expensive; fetch only the most authoritative URL.",
        "parameters": {
            "url": {"type": "string", "description": "http or https URL"},
        },
    },
}

ToolSpec = Tuple[str, Dict[str, Any]]  # (description, parameters)
ToolRegistry = Dict[str, ToolSpec]


def build_registry(names: Sequence[str]) -> ToolRegistry:
    registry: ToolRegistry = {}
    for name in names:
        tool_def = TOOL_DEFINITIONS.get(name)
        if not tool_def:
            raise ValueError(f"Missing tool definition for '{name}'")
        registry[name] = (tool_def["description"], tool_def["parameters"])
    return registry


def parse_param_type(spec: Any) -> Tuple[Optional[str], bool]:
    """Return (base type, optional) for one parameter spec."""
    if isinstance(spec, str):
        return spec.rstrip("?"), spec.endswith("?")
    if isinstance(spec, dict) and isinstance(spec.get("type"), str):
        type_val = spec["type"]
        optional = bool(spec.get("optional", False)) or type_val.endswith("?")
        return type_val.rstrip("?"), optional
    return None, False


def make_tool_declarations(registry: ToolRegistry) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for name, (description, params) in registry.items():
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for pn, pt in params.items():
            base_type, optional = parse_param_type(pt)
            if not base_type:
                continue
            prop: Dict[str, Any] = {"type": base_type}
            if isinstance(pt, dict):
                for key in ("description", "default", "minimum", "maximum"):
                    if key in pt:
                        prop[key] = pt[key]
            properties[pn] = prop
            if not optional:
                required.append(pn)
        out.append({
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        })
    return out
