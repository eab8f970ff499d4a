"""Settings loading, overrides and model capability tables.

Pure functions and plain dataclasses with no dependencies on agent state.
"""

import dataclasses
import fnmatch
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_ENDPOINT = "http://localhost:11434/api/chat"

# Families that accept a tools array on /api/chat.
TOOL_CAPABLE_MODEL_PREFIXES = ("gpt-oss", "qwen", "llama3", "mistral")

# Families that take a reasoning level in the "think" request field.
THINK_LEVEL_MODEL_PREFIXES = ("gpt-oss",)

# Context windows in tokens. Exact names win, then wildcards, then prefixes
# in table order, so longer prefixes must come before shorter ones.
MODEL_CONTEXT_LIMITS: Tuple[Tuple[str, int], ...] = (
    ("gpt-oss", 128000),
    ("llama3.2", 128000),
    ("llama3.1", 128000),
    ("llama3", 8192),
    ("mistral-small3.2", 128000),
    ("mistral-nemo", 128000),
    ("mistral", 32768),
    ("qwen3", 40000),
    ("qwen2.5-coder", 32768),
    ("qwen2.5", 32768),
    ("qwen2", 32768),
    ("gemma2", 8192),
    ("gemma", 8192),
    ("deepcoder", 128000),
    ("phi3", 4096),
    ("phi3:*-128k", 128000),
    ("deepseek-r1", 128000),
    ("deepseek-r1:671b", 160000),
    ("deepseek-coder", 128000),
    ("codellama", 16384),
    ("codellama:70b", 2048),
)
DEFAULT_CONTEXT_LIMIT = 4096


@dataclass
class ModelOptions:
    temperature: float = 0.7
    num_ctx: Optional[int] = 4096
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    seed: Optional[int] = None

    def to_request(self) -> Dict[str, Any]:
        """Options block for the chat request; seed only when pinned."""
        options = {
            "temperature": self.temperature,
            "num_ctx": self.num_ctx,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "repeat_penalty": self.repeat_penalty,
        }
        if self.num_ctx is None:
            del options["num_ctx"]
        if self.seed is not None:
            options["seed"] = self.seed
        return options


@dataclass
class WebSettings:
    provider: str = "disabled"  # "ollama" | "searx" | "disabled"
    searx_url: str = "http://localhost:8888"
    api_key: Optional[str] = None
    max_searches_per_conversation: int = 3
    timeout: float = 30.0


@dataclass
class ShellSettings:
    timeout_ms: int = 120000
    max_output_bytes: int = 10 * 1024 * 1024


@dataclass
class GovernorSettings:
    context_halt_ratio: float = 0.90
    empty_reminder_at: int = 2
    empty_force_at: int = 3
    empty_halt_at: int = 4
    max_tool_calls: int = 50
    nudge_model_prefixes: Tuple[str, ...] = ("gpt-oss",)
    strip_thinking_model_prefixes: Tuple[str, ...] = ("qwen",)


@dataclass
class Settings:
    endpoint: str = DEFAULT_ENDPOINT
    model: str = "gpt-oss:20b"
    options: ModelOptions = field(default_factory=ModelOptions)
    think: Optional[str] = "medium"
    code_mode: bool = True
    web: WebSettings = field(default_factory=WebSettings)
    rag_enabled: bool = False
    rag_timeout: float = 30.0
    rag_max_failures: int = 3
    request_timeout: float = 120.0
    iteration_timeout: float = 600.0
    shell: ShellSettings = field(default_factory=ShellSettings)
    governor: GovernorSettings = field(default_factory=GovernorSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return _build_dataclass(cls, data, "")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


_NESTED = {
    "options": ModelOptions,
    "web": WebSettings,
    "shell": ShellSettings,
    "governor": GovernorSettings,
}


def _build_dataclass(cls, data: Any, prefix: str):
    if not isinstance(data, dict):
        raise ValueError(f"Settings section '{prefix or 'root'}' must be an object")
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(prefix + k for k in unknown)}")
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        nested = _NESTED.get(key) if cls is Settings else None
        if nested is not None:
            kwargs[key] = _build_dataclass(nested, value, f"{key}.")
        elif isinstance(value, list):
            kwargs[key] = tuple(value)
        else:
            kwargs[key] = value
    return cls(**kwargs)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_settings(path: Optional[str], overrides: Optional[List[str]] = None) -> Settings:
    """Read settings JSON (missing file means defaults) and apply key=value overrides."""
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        try:
            raw = load_json(path)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid settings file {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Settings file {path} must contain a JSON object")
    if overrides:
        base = Settings.from_dict(raw).to_dict()
        raw = apply_overrides(base, overrides)
    return Settings.from_dict(raw)


def _coerce_override_value(raw: str, existing: Any, key_name: str) -> Any:
    value = raw.strip()
    lowered = value.lower()
    if lowered in {"none", "null"}:
        return None

    if existing is None:
        if lowered in {"true", "false"}:
            return lowered == "true"
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    if isinstance(existing, bool):
        if lowered in {"true", "false", "1", "0", "yes", "no"}:
            return lowered in {"true", "1", "yes"}
        raise ValueError(f"Invalid boolean for {key_name}: {raw}")

    if isinstance(existing, int):
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for {key_name}: {raw}") from exc

    if isinstance(existing, float):
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid float for {key_name}: {raw}") from exc

    if isinstance(existing, (list, tuple)):
        if value.startswith("["):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON array for {key_name}: {raw}") from exc
            if not isinstance(parsed, list):
                raise ValueError(f"Expected JSON array for {key_name}: {raw}")
            return parsed
        return [item.strip() for item in value.split(",") if item.strip()]

    return value


def apply_overrides(settings: Dict[str, Any], pairs: List[str]) -> Dict[str, Any]:
    """Apply "key=value" overrides; dotted keys address nested sections.

    Values are coerced to the type of the setting they replace.
    """
    merged = json.loads(json.dumps(settings))
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Override must look like key=value: {pair}")
        key, _, raw_value = pair.partition("=")
        key = key.strip().replace("-", "_")
        parts = key.split(".")
        target = merged
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                raise ValueError(f"Unknown settings section in override: {key}")
            target = nested
        leaf = parts[-1]
        if leaf not in target:
            raise ValueError(f"Unknown setting in override: {key}")
        target[leaf] = _coerce_override_value(raw_value, target.get(leaf), key)
    return merged


def _matches_prefix(model: str, prefixes) -> bool:
    name = (model or "").lower()
    return any(name.startswith(p) for p in prefixes)


def supports_tools(model: str) -> bool:
    return _matches_prefix(model, TOOL_CAPABLE_MODEL_PREFIXES)


def supports_think_level(model: str) -> bool:
    return _matches_prefix(model, THINK_LEVEL_MODEL_PREFIXES)


def context_limit_for(model: str) -> int:
    if not model:
        return DEFAULT_CONTEXT_LIMIT
    name = model.lower()
    for pattern, limit in MODEL_CONTEXT_LIMITS:
        if pattern == name:
            return limit
    for pattern, limit in MODEL_CONTEXT_LIMITS:
        if "*" in pattern and fnmatch.fnmatchcase(name, pattern):
            return limit
    for pattern, limit in MODEL_CONTEXT_LIMITS:
        if "*" not in pattern and name.startswith(pattern):
            return limit
    return DEFAULT_CONTEXT_LIMIT


def model_family(model: str) -> str:
    """Name without the tag: "qwen3:8b" -> "qwen3"."""
    return (model or "").split(":")[0]
