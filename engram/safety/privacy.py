"""
Privacy manager — sensitive-data redaction and retention policy.

Sanitization pipeline
---------------------
1. ``<private>…</private>`` blocks are replaced by ``[PRIVATE]`` before
   anything else looks at the text.
2. Every redaction rule (see ``patterns.py``) runs in catalogue order,
   then any user patterns.  Rules only see the text *between* existing
   markers, so a second pass never rewrites its own output.
3. Runs of consecutive ``[REDACTED]`` markers collapse into one, so the
   number of matches is not observable from the output.

``sanitize`` is idempotent and never raises.

Retention
---------
``run_maintenance(storage)`` deletes records older than
``retention_days`` and then trims the store to ``max_memories``.  Both
steps are no-ops when privacy is disabled.
"""

from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Pattern, Tuple

from .patterns import (
    MARKER_RUN,
    MARKER_SPLIT,
    PRIVATE,
    PRIVATE_BLOCK,
    REDACTED,
    RedactionRule,
    compile_user_pattern,
    default_rules,
)

if TYPE_CHECKING:
    from ..memory.sqlite_store import MemoryStorage
    from ..memory.types import Memory

logger = logging.getLogger(__name__)

MAX_STORED_CONTENT = 10000
SESSION_MASK = "[SESSION]"


@dataclass(frozen=True)
class PrivacyConfig:
    enabled: bool = True
    private_tag_enabled: bool = True
    retention_days: int = 90
    max_memories: int = 10000
    strip_patterns: Tuple[str, ...] = ()


@dataclass
class StorageValidation:
    """Outcome of ``validate_for_storage``.  Saves are never rejected."""
    valid: bool = True
    warnings: List[str] = field(default_factory=list)
    sanitized_content: str = ""


def _sub_outside_markers(rule: RedactionRule, text: str) -> str:
    parts = MARKER_SPLIT.split(text)
    # Even indices are plain text, odd indices are the markers themselves.
    for i in range(0, len(parts), 2):
        if parts[i]:
            parts[i] = rule.pattern.sub(rule.replacement, parts[i])
    return "".join(parts)


class PrivacyManager:
    """
    Usage::

        privacy = PrivacyManager(config.privacy)
        clean = privacy.sanitize('password: "hunter2"')
        # -> 'password: [REDACTED]'
    """

    def __init__(self, config: Optional[PrivacyConfig] = None):
        self.cfg = config or PrivacyConfig()
        self._rules: List[RedactionRule] = default_rules()
        for raw in self.cfg.strip_patterns:
            self.add_sensitive_pattern(raw)

    # ── Sanitization ─────────────────────────────────────────

    def sanitize(self, content: Any) -> str:
        text = self._as_text(content)
        if not self.cfg.enabled or not text:
            return text

        if self.cfg.private_tag_enabled:
            text = self.strip_private_tags(text)

        for rule in self._rules:
            text = _sub_outside_markers(rule, text)

        return MARKER_RUN.sub(REDACTED, text)

    def strip_private_tags(self, content: Any) -> str:
        return PRIVATE_BLOCK.sub(PRIVATE, self._as_text(content))

    def contains_sensitive_data(self, content: Any) -> bool:
        text = self._as_text(content)
        return any(rule.pattern.search(text) for rule in self._rules)

    def validate_for_storage(self, content: Any) -> StorageValidation:
        """Sanitize and cap *content*, reporting what was changed."""
        text = self._as_text(content)
        result = StorageValidation(sanitized_content=text)

        if self.cfg.enabled:
            if self.contains_sensitive_data(text):
                result.warnings.append("Content contained sensitive data that was redacted")
            if self.cfg.private_tag_enabled and PRIVATE_BLOCK.search(text):
                result.warnings.append("Content contained <private> blocks that were removed")
            result.sanitized_content = self.sanitize(text)

        if len(result.sanitized_content) > MAX_STORED_CONTENT:
            result.warnings.append(
                f"Content was truncated to {MAX_STORED_CONTENT} characters"
            )
            result.sanitized_content = result.sanitized_content[:MAX_STORED_CONTENT]

        return result

    def anonymize_memory(self, memory: "Memory") -> "Memory":
        """Copy of *memory* safe for export or debugging output."""
        return dataclasses.replace(
            memory,
            title=self.sanitize(memory.title),
            content=self.sanitize(memory.content),
            facts=[self.sanitize(f) for f in memory.facts],
            session_id=SESSION_MASK if memory.session_id else None,
        )

    # ── Pattern management ───────────────────────────────────

    def add_sensitive_pattern(self, pattern: str | Pattern[str]) -> bool:
        """Append a user pattern.  Invalid expressions are logged and skipped."""
        try:
            rule = compile_user_pattern(pattern)
        except re.error as e:
            logger.warning("Ignoring invalid privacy pattern: %s", e)
            return False
        if self.has_pattern(rule.pattern):
            return False
        self._rules.append(rule)
        return True

    def has_pattern(self, pattern: str | Pattern[str]) -> bool:
        if isinstance(pattern, re.Pattern):
            return any(
                r.pattern.pattern == pattern.pattern and r.pattern.flags == pattern.flags
                for r in self._rules
            )
        return any(r.pattern.pattern == pattern for r in self._rules)

    @property
    def rules(self) -> List[RedactionRule]:
        return list(self._rules)

    # ── Retention ────────────────────────────────────────────

    def apply_retention_policy(self, storage: "MemoryStorage") -> Dict[str, Any]:
        if not self.cfg.enabled:
            return {"deleted": 0, "reason": "Privacy disabled"}
        deleted = storage.delete_older_than(self.cfg.retention_days)
        return {
            "deleted": deleted,
            "reason": f"Deleted memories older than {self.cfg.retention_days} days",
        }

    def apply_max_limit(self, storage: "MemoryStorage") -> Dict[str, Any]:
        if not self.cfg.enabled:
            return {"deleted": 0, "reason": "Privacy disabled"}
        deleted = storage.trim_to_max(self.cfg.max_memories)
        return {
            "deleted": deleted,
            "reason": f"Trimmed to max {self.cfg.max_memories} memories",
        }

    def run_maintenance(self, storage: "MemoryStorage") -> Dict[str, Dict[str, Any]]:
        retention = self.apply_retention_policy(storage)
        max_limit = self.apply_max_limit(storage)
        if retention["deleted"] or max_limit["deleted"]:
            logger.info(
                "Memory maintenance: %d expired, %d trimmed",
                retention["deleted"], max_limit["deleted"],
            )
        return {"retention": retention, "max_limit": max_limit}

    # ------------------------------------------------------------------

    @staticmethod
    def _as_text(content: Any) -> str:
        if content is None:
            return ""
        return content if isinstance(content, str) else str(content)
