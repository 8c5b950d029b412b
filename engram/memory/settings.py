"""
Immutable configuration for the memory subsystem.

``MemoryConfig`` is built once (from defaults, a plain mapping, or the
``memory`` subtree of the JSON ``Config`` store) and then handed to every
component constructor.  Nothing in the subsystem reads global settings.

Mappings may use either snake_case (``min_importance_threshold``) or the
camelCase spelling used in JSON files (``minImportanceThreshold``).
Out-of-range values never raise: the offending section is logged and
replaced by its defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..safety.privacy import PrivacyConfig
from .types import is_memory_type

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

FORMAT_STRUCTURED = "structured"
FORMAT_TIMELINE = "timeline"
FORMAT_BULLETS = "bullets"
CONTEXT_FORMATS = (FORMAT_STRUCTURED, FORMAT_TIMELINE, FORMAT_BULLETS)

PROVIDER_LOCAL = "local"
PROVIDER_OPENAI = "openai"
PROVIDER_OLLAMA = "ollama"
EMBEDDING_PROVIDERS = (PROVIDER_LOCAL, PROVIDER_OPENAI, PROVIDER_OLLAMA)

DEFAULT_SKIP_TOOLS = (
    "Read", "Glob", "Grep", "Bash",
    "mcp_read", "mcp_glob", "mcp_grep", "mcp_bash",
    "memory_save", "memory_search", "memory_note",
    "memory_decision", "memory_forget",
)


# ------------------------------------------------------------------
# Sections
# ------------------------------------------------------------------

@dataclass(frozen=True)
class CaptureConfig:
    """What gets captured and how important it must be."""
    enabled: bool = True
    capture_tool_use: bool = True
    capture_messages: bool = False
    capture_phase_changes: bool = True
    skip_tools: Tuple[str, ...] = DEFAULT_SKIP_TOOLS
    min_importance_threshold: int = 4     # 1–10 scale


@dataclass(frozen=True)
class InjectionConfig:
    """Context-building knobs."""
    enabled: bool = True
    budget_tokens: int = 800
    format: str = FORMAT_TIMELINE
    priority_types: Tuple[str, ...] = ("decision", "observation", "todo")


@dataclass(frozen=True)
class EmbeddingsConfig:
    provider: str = PROVIDER_LOCAL
    dimensions: int = 384
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0                 # HTTP providers, seconds


@dataclass(frozen=True)
class RetrievalConfig:
    fts_weight: float = 0.4
    vector_weight: float = 0.6
    rrf_k: int = 60
    reranking: bool = False
    vector_enabled: bool = True
    vector_timeout: float = 2.0           # fan-in wait for the vector branch, seconds


@dataclass(frozen=True)
class MemoryConfig:
    """Complete, immutable memory configuration."""
    enabled: bool = True
    db_path: str = "memory_data/engram.db"
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    injection: InjectionConfig = field(default_factory=InjectionConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "MemoryConfig":
        return parse_memory_config(raw)

    @classmethod
    def from_store(cls, store: "Config", prefix: str = "memory") -> "MemoryConfig":
        """Snapshot the ``memory.*`` subtree of a ``Config`` store."""
        return parse_memory_config(store.section(prefix))


# ------------------------------------------------------------------
# Field checks
# ------------------------------------------------------------------

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _lookup(raw: Mapping[str, Any], name: str) -> Tuple[bool, Any]:
    if name in raw:
        return True, raw[name]
    alt = _camel(name)
    if alt in raw:
        return True, raw[alt]
    return False, None


def _is_bool(v: Any) -> bool:
    return isinstance(v, bool)


def _is_int(lo: int, hi: int) -> Callable[[Any], bool]:
    def check(v: Any) -> bool:
        return isinstance(v, int) and not isinstance(v, bool) and lo <= v <= hi
    return check


def _is_float(lo: float, hi: float) -> Callable[[Any], bool]:
    def check(v: Any) -> bool:
        return (isinstance(v, (int, float)) and not isinstance(v, bool)
                and lo <= float(v) <= hi)
    return check


def _is_choice(options: Tuple[str, ...]) -> Callable[[Any], bool]:
    def check(v: Any) -> bool:
        return v in options
    return check


def _is_str_list(v: Any) -> bool:
    return isinstance(v, (list, tuple)) and all(isinstance(x, str) for x in v)


def _is_type_list(v: Any) -> bool:
    return _is_str_list(v) and all(is_memory_type(x) for x in v)


def _is_opt_str(v: Any) -> bool:
    return v is None or isinstance(v, str)


# name -> (validator, human description)
_Checks = Dict[str, Tuple[Callable[[Any], bool], str]]

_CAPTURE_CHECKS: _Checks = {
    "enabled": (_is_bool, "a boolean"),
    "capture_tool_use": (_is_bool, "a boolean"),
    "capture_messages": (_is_bool, "a boolean"),
    "capture_phase_changes": (_is_bool, "a boolean"),
    "skip_tools": (_is_str_list, "a list of strings"),
    "min_importance_threshold": (_is_int(1, 10), "an integer in 1..10"),
}

_INJECTION_CHECKS: _Checks = {
    "enabled": (_is_bool, "a boolean"),
    "budget_tokens": (_is_int(100, 4000), "an integer in 100..4000"),
    "format": (_is_choice(CONTEXT_FORMATS), "one of " + ", ".join(CONTEXT_FORMATS)),
    "priority_types": (_is_type_list, "a list of memory types"),
}

_PRIVACY_CHECKS: _Checks = {
    "enabled": (_is_bool, "a boolean"),
    "private_tag_enabled": (_is_bool, "a boolean"),
    "retention_days": (_is_int(1, 365), "an integer in 1..365"),
    "max_memories": (_is_int(100, 100000), "an integer in 100..100000"),
    "strip_patterns": (_is_str_list, "a list of strings"),
}

_EMBEDDINGS_CHECKS: _Checks = {
    "provider": (_is_choice(EMBEDDING_PROVIDERS), "one of " + ", ".join(EMBEDDING_PROVIDERS)),
    "dimensions": (_is_int(64, 4096), "an integer in 64..4096"),
    "model": (_is_opt_str, "a string"),
    "api_key": (_is_opt_str, "a string"),
    "base_url": (_is_opt_str, "a string"),
    "timeout": (_is_float(0.1, 600.0), "a number of seconds in 0.1..600"),
}

_RETRIEVAL_CHECKS: _Checks = {
    "fts_weight": (_is_float(0.0, 1.0), "a number in 0..1"),
    "vector_weight": (_is_float(0.0, 1.0), "a number in 0..1"),
    "rrf_k": (_is_int(1, 1000), "an integer in 1..1000"),
    "reranking": (_is_bool, "a boolean"),
    "vector_enabled": (_is_bool, "a boolean"),
    "vector_timeout": (_is_float(0.01, 60.0), "a number of seconds in 0.01..60"),
}

_SECTIONS: Dict[str, Tuple[type, _Checks]] = {
    "capture": (CaptureConfig, _CAPTURE_CHECKS),
    "injection": (InjectionConfig, _INJECTION_CHECKS),
    "privacy": (PrivacyConfig, _PRIVACY_CHECKS),
    "embeddings": (EmbeddingsConfig, _EMBEDDINGS_CHECKS),
    "retrieval": (RetrievalConfig, _RETRIEVAL_CHECKS),
}

_LIST_FIELDS = {"skip_tools", "priority_types", "strip_patterns"}
_FLOAT_FIELDS = {"timeout", "fts_weight", "vector_weight", "vector_timeout"}


def _section_errors(section: str, raw: Any, checks: _Checks) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, Mapping):
        return [f"{section}: expected an object"]
    errors = []
    for name, (check, desc) in checks.items():
        present, value = _lookup(raw, name)
        if present and not check(value):
            errors.append(f"{section}.{name}: must be {desc}, got {value!r}")
    return errors


def _build_section(cls: type, raw: Mapping[str, Any], checks: _Checks) -> Any:
    kwargs = {}
    for name in checks:
        present, value = _lookup(raw, name)
        if not present:
            continue
        if name in _LIST_FIELDS:
            value = tuple(value)
        elif name in _FLOAT_FIELDS:
            value = float(value)
        kwargs[name] = value
    return cls(**kwargs)


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------

def validate_memory_config(raw: Any) -> Tuple[bool, List[str]]:
    """Report every problem in *raw* without building anything."""
    if raw is None:
        return True, []
    if not isinstance(raw, Mapping):
        return False, ["memory: expected an object"]
    errors: List[str] = []
    for key in ("enabled",):
        present, value = _lookup(raw, key)
        if present and not _is_bool(value):
            errors.append(f"{key}: must be a boolean, got {value!r}")
    present, value = _lookup(raw, "db_path")
    if present and not isinstance(value, str):
        errors.append(f"db_path: must be a string, got {value!r}")
    for section, (_cls, checks) in _SECTIONS.items():
        errors.extend(_section_errors(section, raw.get(section), checks))
    return not errors, errors


def parse_memory_config(raw: Optional[Mapping[str, Any]]) -> MemoryConfig:
    """
    Build a ``MemoryConfig`` from a plain mapping.

    Never raises.  A section with any invalid field falls back entirely
    to its defaults and a warning is logged.
    """
    if not isinstance(raw, Mapping):
        if raw is not None:
            logger.warning("Memory config is not a mapping, using defaults")
        return MemoryConfig()

    kwargs: Dict[str, Any] = {}
    present, value = _lookup(raw, "enabled")
    if present:
        if _is_bool(value):
            kwargs["enabled"] = value
        else:
            logger.warning("Invalid memory.enabled %r, using default", value)
    present, value = _lookup(raw, "db_path")
    if present:
        if isinstance(value, str) and value:
            kwargs["db_path"] = value
        else:
            logger.warning("Invalid memory.db_path %r, using default", value)

    for section, (cls, checks) in _SECTIONS.items():
        sub = raw.get(section)
        if sub is None:
            continue
        errors = _section_errors(section, sub, checks)
        if errors:
            logger.warning(
                "Invalid memory.%s config, using defaults: %s",
                section, "; ".join(errors),
            )
            continue
        kwargs[section] = _build_section(cls, sub, checks)

    return MemoryConfig(**kwargs)
