"""
Data types for the memory subsystem.

Raw events
----------
``RawEvent`` is a closed union of four event classes, one per
observable host action.  Each carries a ``kind`` class attribute so
code can dispatch on either the class or the string:

* ``ToolUseEvent``          — ``tool_use``
* ``PhaseChangeEvent``      — ``phase_change``
* ``UserMessageEvent``      — ``user_message``
* ``AssistantMessageEvent`` — ``assistant_message``

Records
-------
``MemoryInput`` is the pre-persistence shape produced by the distiller
(or by callers saving directly).  ``Memory`` is the persisted record;
its ``importance`` is always on the canonical 0–1 scale.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Union

# ------------------------------------------------------------------
# Memory types / visibility / match types
# ------------------------------------------------------------------

MEMORY_TYPE_OBSERVATION = "observation"          # distilled facts from tool usage
MEMORY_TYPE_DECISION = "decision"                # explicit decisions with reasoning
MEMORY_TYPE_SESSION_SUMMARY = "session_summary"  # end-of-session / phase summaries
MEMORY_TYPE_USER_PROMPT = "user_prompt"          # sanitized user intents
MEMORY_TYPE_NOTE = "note"                        # quick manual notes
MEMORY_TYPE_TODO = "todo"                        # durable tasks

MEMORY_TYPES = (
    MEMORY_TYPE_OBSERVATION,
    MEMORY_TYPE_DECISION,
    MEMORY_TYPE_SESSION_SUMMARY,
    MEMORY_TYPE_USER_PROMPT,
    MEMORY_TYPE_NOTE,
    MEMORY_TYPE_TODO,
)
_VALID_MEMORY_TYPES = frozenset(MEMORY_TYPES)

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"
_VALID_VISIBILITY = frozenset({VISIBILITY_PUBLIC, VISIBILITY_PRIVATE})

MATCH_FTS = "fts"
MATCH_VECTOR = "vector"
MATCH_HYBRID = "hybrid"

EVENT_TOOL_USE = "tool_use"
EVENT_PHASE_CHANGE = "phase_change"
EVENT_USER_MESSAGE = "user_message"
EVENT_ASSISTANT_MESSAGE = "assistant_message"

TITLE_MAX_CHARS = 100


def is_memory_type(value: str) -> bool:
    return value in _VALID_MEMORY_TYPES


def normalize_memory_type(value: Optional[str]) -> str:
    """Unknown or missing types fall back to ``observation``."""
    return value if value is not None and is_memory_type(value) else MEMORY_TYPE_OBSERVATION


def normalize_visibility(value: Optional[str]) -> str:
    return value if value in _VALID_VISIBILITY else VISIBILITY_PUBLIC


def canonical_importance(value: Optional[float], default: float = 0.5) -> float:
    """
    Clamp an importance value to the canonical 0–1 scale.

    Callers holding a 1–10 estimate divide by 10 first (the distiller
    does).  ``None``, NaN or non-numeric input yields *default*.
    """
    if value is None:
        return default
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return max(0.0, min(1.0, v))


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------

@dataclass
class MemoryInput:
    """A record ready to be persisted."""
    type: str
    title: str
    content: str
    facts: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    source_files: List[str] = field(default_factory=list)
    importance: Optional[float] = None
    visibility: str = VISIBILITY_PUBLIC
    phase: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class MemoryUpdate:
    """Partial update; ``None`` fields are left untouched."""
    title: Optional[str] = None
    content: Optional[str] = None
    facts: Optional[List[str]] = None
    concepts: Optional[List[str]] = None
    source_files: Optional[List[str]] = None
    importance: Optional[float] = None
    visibility: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            getattr(self, name) is None
            for name in ("title", "content", "facts", "concepts",
                         "source_files", "importance", "visibility")
        )


@dataclass
class Memory:
    """A persisted record.  ``id`` never changes once assigned."""
    id: int
    type: str
    title: str
    content: str
    facts: List[str]
    concepts: List[str]
    source_files: List[str]
    importance: float
    visibility: str
    created_at: float
    updated_at: float
    accessed_at: float
    access_count: int = 0
    phase: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class SearchResult:
    """One ranked hit."""
    memory: Memory
    score: float
    match_type: str  # "fts" | "vector" | "hybrid"
    highlighted: Optional[str] = None


@dataclass
class VectorHit:
    """Raw hit from the vector index — ids only, joined later."""
    memory_id: int
    distance: float


@dataclass(frozen=True)
class HybridWeight:
    fts: float = 0.4
    vector: float = 0.6


@dataclass
class SearchFilters:
    """Row filters shared by the FTS query and vector-only point lookups."""
    types: Optional[Sequence[str]] = None
    concepts: Optional[Sequence[str]] = None
    min_importance: Optional[float] = None   # canonical 0–1 scale
    include_private: bool = False
    phase: Optional[str] = None

    def matches(self, memory: Memory) -> bool:
        if self.types and memory.type not in self.types:
            return False
        if self.min_importance is not None and memory.importance < self.min_importance:
            return False
        if not self.include_private and memory.visibility != VISIBILITY_PUBLIC:
            return False
        if self.phase is not None and memory.phase != self.phase:
            return False
        if self.concepts and not set(self.concepts) & set(memory.concepts):
            return False
        return True


@dataclass
class SearchOptions:
    query: str
    limit: int = 10
    types: Optional[Sequence[str]] = None
    concepts: Optional[Sequence[str]] = None
    min_importance: Optional[float] = None   # canonical 0–1 scale
    include_private: bool = False
    phase: Optional[str] = None
    hybrid_weight: Optional[HybridWeight] = None

    def filters(self) -> SearchFilters:
        return SearchFilters(
            types=self.types,
            concepts=self.concepts,
            min_importance=self.min_importance,
            include_private=self.include_private,
            phase=self.phase,
        )


# ------------------------------------------------------------------
# Raw events
# ------------------------------------------------------------------

@dataclass
class ToolUseEvent:
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)
    result: str = ""
    session_id: str = ""
    timestamp: float = field(default_factory=time.time)

    kind: ClassVar[str] = EVENT_TOOL_USE


@dataclass
class PhaseChangeEvent:
    to_phase: str
    from_phase: Optional[str] = None
    session_id: str = ""
    timestamp: float = field(default_factory=time.time)

    kind: ClassVar[str] = EVENT_PHASE_CHANGE


@dataclass
class UserMessageEvent:
    content: str
    session_id: str = ""
    timestamp: float = field(default_factory=time.time)

    kind: ClassVar[str] = EVENT_USER_MESSAGE


@dataclass
class AssistantMessageEvent:
    content: str
    session_id: str = ""
    timestamp: float = field(default_factory=time.time)

    kind: ClassVar[str] = EVENT_ASSISTANT_MESSAGE


RawEvent = Union[ToolUseEvent, PhaseChangeEvent, UserMessageEvent, AssistantMessageEvent]

RAW_EVENT_CLASSES = (ToolUseEvent, PhaseChangeEvent, UserMessageEvent, AssistantMessageEvent)


def event_kind(event: Any) -> Optional[str]:
    """The event's kind string, or ``None`` for anything outside the union."""
    if isinstance(event, RAW_EVENT_CLASSES):
        return event.kind
    return None


def raw_event_from_dict(payload: Mapping[str, Any]) -> Optional[RawEvent]:
    """
    Build a ``RawEvent`` from a plain mapping (bus payloads, JSON).

    Accepts both the flat shape and the ``{"type", "sessionId",
    "timestamp", "data": {...}}`` envelope.  Unknown kinds return
    ``None``.
    """
    kind = payload.get("type") or payload.get("kind")
    data = payload.get("data")
    if not isinstance(data, Mapping):
        data = payload
    session_id = str(payload.get("session_id") or payload.get("sessionId") or "")
    ts = payload.get("timestamp")
    timestamp = float(ts) if isinstance(ts, (int, float)) else time.time()

    if kind == EVENT_TOOL_USE:
        args = data.get("args")
        return ToolUseEvent(
            tool=str(data.get("tool", "")),
            args=dict(args) if isinstance(args, Mapping) else {},
            result=str(data.get("result") or ""),
            session_id=session_id,
            timestamp=timestamp,
        )
    if kind == EVENT_PHASE_CHANGE:
        src = data.get("from", data.get("from_phase"))
        return PhaseChangeEvent(
            to_phase=str(data.get("to", data.get("to_phase", ""))),
            from_phase=str(src) if src is not None else None,
            session_id=session_id,
            timestamp=timestamp,
        )
    if kind == EVENT_USER_MESSAGE:
        return UserMessageEvent(
            content=str(data.get("content") or ""),
            session_id=session_id,
            timestamp=timestamp,
        )
    if kind == EVENT_ASSISTANT_MESSAGE:
        return AssistantMessageEvent(
            content=str(data.get("content") or ""),
            session_id=session_id,
            timestamp=timestamp,
        )
    return None
