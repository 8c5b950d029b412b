"""
Capture filter — decides which raw events are worth remembering.

``should_capture`` and ``estimate_importance`` are pure functions over a
``CaptureConfig`` and a ``RawEvent``; neither does any I/O.  Importance
here is on the human 1–10 integer scale.  The distiller compares it with
``min_importance_threshold`` and converts it to the canonical 0–1 scale
before anything is stored.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from ..safety.privacy import PrivacyManager
from .settings import CaptureConfig
from .types import (
    MEMORY_TYPE_DECISION,
    MEMORY_TYPE_OBSERVATION,
    MEMORY_TYPE_SESSION_SUMMARY,
    MEMORY_TYPE_USER_PROMPT,
    AssistantMessageEvent,
    PhaseChangeEvent,
    RawEvent,
    ToolUseEvent,
    UserMessageEvent,
)

# State-changing tools rank high, informational ones low.
TOOL_IMPORTANCE: Dict[str, int] = {
    "Write": 8,
    "mcp_write": 8,
    "Edit": 7,
    "mcp_edit": 7,
    "memory_decision": 8,
    "goop_adl": 7,
    "goop_checkpoint": 6,
    "goop_spec": 6,
    "goop_status": 3,
    "goop_skill": 4,
}

DEFAULT_TOOL_IMPORTANCE = 5
PHASE_CHANGE_IMPORTANCE = 7
USER_QUESTION_IMPORTANCE = 6
USER_MESSAGE_IMPORTANCE = 4
ASSISTANT_MESSAGE_IMPORTANCE = 3

COMMAND_PREFIX = "/"
TOOL_RESULT_MAX_CHARS = 2000
MESSAGE_MAX_CHARS = 5000


def should_capture(event: RawEvent, config: CaptureConfig) -> bool:
    if not config.enabled:
        return False
    if isinstance(event, ToolUseEvent):
        return config.capture_tool_use and event.tool not in config.skip_tools
    if isinstance(event, (UserMessageEvent, AssistantMessageEvent)):
        return config.capture_messages
    if isinstance(event, PhaseChangeEvent):
        return config.capture_phase_changes
    return False


def estimate_importance(event: RawEvent) -> int:
    """Importance on the 1–10 scale."""
    if isinstance(event, ToolUseEvent):
        return TOOL_IMPORTANCE.get(event.tool, DEFAULT_TOOL_IMPORTANCE)
    if isinstance(event, PhaseChangeEvent):
        return PHASE_CHANGE_IMPORTANCE
    if isinstance(event, UserMessageEvent):
        text = event.content or ""
        if "?" in text or text.startswith(COMMAND_PREFIX):
            return USER_QUESTION_IMPORTANCE
        return USER_MESSAGE_IMPORTANCE
    if isinstance(event, AssistantMessageEvent):
        return ASSISTANT_MESSAGE_IMPORTANCE
    return DEFAULT_TOOL_IMPORTANCE


def get_memory_type_for_event(event: RawEvent) -> str:
    if isinstance(event, ToolUseEvent):
        if "decision" in event.tool:
            return MEMORY_TYPE_DECISION
        return MEMORY_TYPE_OBSERVATION
    if isinstance(event, PhaseChangeEvent):
        return MEMORY_TYPE_SESSION_SUMMARY
    if isinstance(event, UserMessageEvent):
        return MEMORY_TYPE_USER_PROMPT
    return MEMORY_TYPE_OBSERVATION


# ------------------------------------------------------------------
# Event builders
# ------------------------------------------------------------------

def build_tool_capture_event(
    tool: str,
    args: Optional[Dict[str, Any]],
    result: str,
    session_id: str,
    privacy: Optional[PrivacyManager] = None,
) -> ToolUseEvent:
    """Sanitize, then truncate, the tool result."""
    privacy = privacy or PrivacyManager()
    return ToolUseEvent(
        tool=tool,
        args=dict(args or {}),
        result=privacy.sanitize(result or "")[:TOOL_RESULT_MAX_CHARS],
        session_id=session_id,
        timestamp=time.time(),
    )


def build_phase_capture_event(
    from_phase: Optional[str],
    to_phase: str,
    session_id: str,
) -> PhaseChangeEvent:
    return PhaseChangeEvent(
        to_phase=to_phase,
        from_phase=from_phase,
        session_id=session_id,
        timestamp=time.time(),
    )


def build_message_capture_event(
    content: str,
    role: str,
    session_id: str,
    privacy: Optional[PrivacyManager] = None,
) -> RawEvent:
    """
    Sanitize and truncate a chat message into a message event.

    *role* is ``"user"`` or ``"assistant"``; anything else is treated as
    assistant output.
    """
    privacy = privacy or PrivacyManager()
    text = privacy.sanitize(content or "")[:MESSAGE_MAX_CHARS]
    if role == "user":
        return UserMessageEvent(content=text, session_id=session_id, timestamp=time.time())
    return AssistantMessageEvent(content=text, session_id=session_id, timestamp=time.time())
