"""
Distiller — turns an accepted raw event into a storable ``MemoryInput``.

Pipeline for one event::

    should_capture ──no──▶ captured=False ("filtered")
          │
    estimate_importance < threshold ──▶ captured=False ("below threshold")
          │
    per-kind extractor ──▶ MemoryInput (sanitized, capped)

The extractors (``extract_*``) are plain functions with no I/O so each
one can be tested on its own.  Extraction is heuristic: fixed title
templates, bullet-line facts, a small keyword vocabulary for concepts.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..safety.privacy import PrivacyManager
from .capture import estimate_importance, get_memory_type_for_event, should_capture
from .settings import CaptureConfig
from .types import (
    MEMORY_TYPE_OBSERVATION,
    MEMORY_TYPE_SESSION_SUMMARY,
    MEMORY_TYPE_USER_PROMPT,
    TITLE_MAX_CHARS,
    AssistantMessageEvent,
    MemoryInput,
    PhaseChangeEvent,
    RawEvent,
    ToolUseEvent,
    UserMessageEvent,
)

logger = logging.getLogger(__name__)

REASON_FILTERED = "Event filtered by capture config"
REASON_BELOW_THRESHOLD = "Below importance threshold"
REASON_TOO_SHORT = "Assistant message too short"
REASON_UNKNOWN = "Unknown event type"

MAX_FACTS = 5
MAX_CONCEPTS = 5
MAX_SOURCE_FILES = 5
MAX_TOOL_ARGS = 5
TOOL_ARG_MAX_CHARS = 100
TOOL_RESULT_PREVIEW_CHARS = 500
ASSISTANT_CONTENT_MAX_CHARS = 2000
USER_CONTENT_MAX_CHARS = 5000
ASSISTANT_MIN_CHARS = 100

# Args that carry whole file bodies or diffs; never copied into content.
_BULKY_ARGS = frozenset({"content", "newString", "oldString", "new_string", "old_string"})
_PATH_ARGS = ("filePath", "file_path", "file", "path")

CONCEPT_KEYWORDS = (
    "function", "class", "component", "api", "database", "test",
    "bug", "fix", "feature", "refactor", "performance", "security",
    "typescript", "javascript", "react", "node", "python",
)

_PATH_RE = re.compile(r"(?:/[\w.-]+)+\.\w+")
_BULLET_RE = re.compile(r"^\s*[-*•]\s*(.+)$", re.MULTILINE)
_SENTENCE_END_RE = re.compile(r"[.!?\n]")
_EXT_RE = re.compile(r"\.([A-Za-z0-9]{1,8})$")


@dataclass
class DistillationResult:
    captured: bool
    memory: Optional[MemoryInput] = None
    reason: Optional[str] = None


# ------------------------------------------------------------------
# Extractors
# ------------------------------------------------------------------

def _path_arg(args: Mapping[str, Any]) -> Optional[str]:
    for key in _PATH_ARGS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _dedupe(items: Iterable[str], limit: int) -> List[str]:
    seen: List[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
            if len(seen) >= limit:
                break
    return seen


def file_extension(path: str) -> Optional[str]:
    m = _EXT_RE.search(path)
    return m.group(1).lower() if m else None


def extract_tool_title(tool: str, args: Mapping[str, Any]) -> str:
    path = _path_arg(args) or "file"
    if tool in ("Edit", "mcp_edit"):
        title = f"Edited {path}"
    elif tool in ("Write", "mcp_write"):
        title = f"Wrote {path}"
    elif tool in ("Bash", "mcp_bash"):
        cmd = str(args.get("command") or args.get("cmd") or "")[:50]
        title = f"Ran: {cmd}"
    elif tool == "goop_checkpoint":
        title = f"Created checkpoint: {args.get('id') or 'unnamed'}"
    elif tool == "goop_adl":
        title = f"ADL: {args.get('type') or 'entry'}"
    else:
        title = f"Tool: {tool}"
    return title[:TITLE_MAX_CHARS]


def build_tool_content(tool: str, args: Mapping[str, Any], result: str) -> str:
    lines = [f"Tool: {tool}"]
    relevant = [(k, v) for k, v in args.items() if k not in _BULKY_ARGS][:MAX_TOOL_ARGS]
    if relevant:
        lines.append("Arguments:")
        for key, value in relevant:
            lines.append(f"  {key}: {str(value)[:TOOL_ARG_MAX_CHARS]}")
    if result:
        tail = "..." if len(result) > TOOL_RESULT_PREVIEW_CHARS else ""
        lines.append(f"Result: {result[:TOOL_RESULT_PREVIEW_CHARS]}{tail}")
    return "\n".join(lines)


def extract_facts_from_result(tool: str, result: str) -> List[str]:
    facts: List[str] = []
    if "Edit" in tool or "Write" in tool or tool in ("mcp_edit", "mcp_write"):
        if "success" in result.lower():
            facts.append("File modification successful")
    if "Bash" in tool or tool == "mcp_bash":
        lowered = result.lower()
        if "error" in lowered:
            facts.append("Command encountered an error")
        elif "success" in lowered:
            facts.append("Command completed successfully")
    return facts[:MAX_FACTS]


def extract_facts_from_text(text: str) -> List[str]:
    """Bullet lines (``-``, ``*``, ``•``), first five."""
    return [m.group(1).strip() for m in _BULLET_RE.finditer(text)][:MAX_FACTS]


def extract_concepts_from_tool(tool: str, args: Mapping[str, Any]) -> List[str]:
    name = tool.lower()
    if name.startswith("mcp_"):
        name = name[4:]
    concepts = [name]
    path = _path_arg(args)
    if path:
        ext = file_extension(path)
        if ext:
            concepts.append(ext)
    return _dedupe(concepts, MAX_CONCEPTS)


def extract_concepts_from_text(text: str) -> List[str]:
    lowered = text.lower()
    concepts = [kw for kw in CONCEPT_KEYWORDS if kw in lowered]
    for path in _PATH_RE.findall(text):
        ext = file_extension(path)
        if ext:
            concepts.append(ext)
    return _dedupe(concepts, MAX_CONCEPTS)


def extract_source_files(args: Mapping[str, Any], result: str) -> List[str]:
    files: List[str] = []
    path = _path_arg(args)
    if path:
        files.append(path)
    files.extend(_PATH_RE.findall(result or ""))
    return _dedupe(files, MAX_SOURCE_FILES)


def extract_intent_title(text: str) -> str:
    """First sentence, else the first 100 characters."""
    first = _SENTENCE_END_RE.split(text, maxsplit=1)[0].strip()
    return (first or text.strip())[:TITLE_MAX_CHARS]


# ------------------------------------------------------------------
# Distiller
# ------------------------------------------------------------------

class MemoryDistiller:
    """
    Usage::

        distiller = MemoryDistiller(config.capture, PrivacyManager(config.privacy))
        result = distiller.distill(event)
        if result.captured:
            manager.save(result.memory)
    """

    def __init__(
        self,
        config: Optional[CaptureConfig] = None,
        privacy: Optional[PrivacyManager] = None,
    ):
        self.cfg = config or CaptureConfig()
        self.privacy = privacy or PrivacyManager()

    def distill(self, event: RawEvent) -> DistillationResult:
        if not should_capture(event, self.cfg):
            logger.debug("Capture skipped: %s", getattr(event, "kind", type(event).__name__))
            return DistillationResult(captured=False, reason=REASON_FILTERED)

        importance = estimate_importance(event)
        if importance < self.cfg.min_importance_threshold:
            return DistillationResult(captured=False, reason=REASON_BELOW_THRESHOLD)

        if isinstance(event, ToolUseEvent):
            return self._distill_tool_use(event, importance)
        if isinstance(event, PhaseChangeEvent):
            return self._distill_phase_change(event, importance)
        if isinstance(event, UserMessageEvent):
            return self._distill_user_message(event, importance)
        if isinstance(event, AssistantMessageEvent):
            return self._distill_assistant_message(event, importance)
        return DistillationResult(captured=False, reason=REASON_UNKNOWN)

    # ── Per-kind ─────────────────────────────────────────────

    def _distill_tool_use(self, event: ToolUseEvent, importance: int) -> DistillationResult:
        # Sanitize whole values before any clipping so no delimiter is cut off.
        args: Dict[str, Any] = {
            k: v if k in _BULKY_ARGS else self.privacy.sanitize(v)
            for k, v in (event.args or {}).items()
        }
        result = self.privacy.sanitize(event.result or "")
        memory = MemoryInput(
            type=get_memory_type_for_event(event),
            title=self.privacy.sanitize(extract_tool_title(event.tool, args)),
            content=self.privacy.sanitize(build_tool_content(event.tool, args, result)),
            facts=extract_facts_from_result(event.tool, result),
            concepts=extract_concepts_from_tool(event.tool, args),
            source_files=extract_source_files(args, result),
            importance=importance / 10.0,
            session_id=event.session_id or None,
        )
        return DistillationResult(captured=True, memory=memory)

    def _distill_phase_change(self, event: PhaseChangeEvent, importance: int) -> DistillationResult:
        to = event.to_phase
        memory = MemoryInput(
            type=MEMORY_TYPE_SESSION_SUMMARY,
            title=f"Workflow phase: {event.from_phase or 'start'} -> {to}"[:TITLE_MAX_CHARS],
            content=f"Transitioned from {event.from_phase or 'initial'} phase to {to} phase.",
            facts=[f"Entered {to} phase"],
            concepts=_dedupe(["workflow", "phase", to], MAX_CONCEPTS),
            importance=importance / 10.0,
            phase=to or None,
            session_id=event.session_id or None,
        )
        return DistillationResult(captured=True, memory=memory)

    def _distill_user_message(self, event: UserMessageEvent, importance: int) -> DistillationResult:
        content = self.privacy.sanitize(event.content or "")[:USER_CONTENT_MAX_CHARS]
        memory = MemoryInput(
            type=MEMORY_TYPE_USER_PROMPT,
            title=extract_intent_title(content),
            content=content,
            facts=extract_facts_from_text(content),
            concepts=extract_concepts_from_text(content),
            importance=importance / 10.0,
            session_id=event.session_id or None,
        )
        return DistillationResult(captured=True, memory=memory)

    def _distill_assistant_message(
        self, event: AssistantMessageEvent, importance: int,
    ) -> DistillationResult:
        raw = event.content or ""
        if len(raw) < ASSISTANT_MIN_CHARS:
            return DistillationResult(captured=False, reason=REASON_TOO_SHORT)
        content = self.privacy.sanitize(raw)[:ASSISTANT_CONTENT_MAX_CHARS]
        memory = MemoryInput(
            type=MEMORY_TYPE_OBSERVATION,
            title=extract_intent_title(content),
            content=content,
            facts=extract_facts_from_text(content),
            concepts=extract_concepts_from_text(content),
            importance=importance / 10.0,
            session_id=event.session_id or None,
        )
        return DistillationResult(captured=True, memory=memory)
