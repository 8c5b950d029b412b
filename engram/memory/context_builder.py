"""
Context builder — formats retrieved memories into a prompt-ready block
under a token budget.

Token accounting
----------------
Tokens are estimated as ``ceil(chars / 4)``.  Output is assembled from
pieces (header, one piece per memory, optional decisions block, footer)
joined with ``"\\n"``; each piece is charged ``estimate(piece + "\\n")``,
so the sum of charges is an upper bound on ``len(output) / 4``.

Header and footer are charged first.  Memory entries are then added
whole, in rank order, until the next one would not fit; a partial entry
is never emitted.  When recent decisions exist, room for them is held
back from the entries so generic observations cannot crowd them out.

Every ``build_*`` method returns ``""`` when nothing qualifies or the
underlying lookup fails.
"""

from __future__ import annotations

import html
import logging
import math
from datetime import datetime
from typing import Any, List, Optional, Sequence

from .settings import FORMAT_BULLETS, FORMAT_STRUCTURED, FORMAT_TIMELINE, InjectionConfig
from .types import MATCH_FTS, MEMORY_TYPE_DECISION, Memory, SearchOptions, SearchResult

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 15
PHASE_SEARCH_LIMIT = 10
RECENT_DECISIONS = 5
DECISIONS_RESERVE_TOKENS = 100


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def _cost(piece: str) -> int:
    return estimate_tokens(piece + "\n")


def _clip(text: str, n: int) -> str:
    return text[:n] + ("..." if len(text) > n else "")


def _date(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


# ------------------------------------------------------------------
# Entry formats
# ------------------------------------------------------------------

def format_structured(memory: Memory, score: float) -> str:
    facts = ""
    if memory.facts:
        facts = f' facts="{html.escape("; ".join(memory.facts[:3]), quote=True)}"'
    return (
        f'<memory type="{memory.type}" date="{_date(memory.created_at)}" '
        f'importance="{memory.importance:.2f}" score="{score:.2f}"{facts}>\n'
        f"  <title>{memory.title}</title>\n"
        f"  <content>{_clip(memory.content, 200)}</content>\n"
        f"</memory>"
    )


def format_timeline(memory: Memory, score: float) -> str:
    return (
        f"### [{memory.type}] {memory.title}\n"
        f"*{_date(memory.created_at)} | Score: {score:.2f}*\n"
        f"{_clip(memory.content, 150)}\n"
    )


def format_bullets(memory: Memory, score: float) -> str:
    return (
        f"- **[{memory.type}]** {memory.title} "
        f"({_date(memory.created_at)}): {_clip(memory.content, 100)}"
    )


_FORMATTERS = {
    FORMAT_STRUCTURED: format_structured,
    FORMAT_TIMELINE: format_timeline,
    FORMAT_BULLETS: format_bullets,
}

_HEADERS = {
    FORMAT_STRUCTURED: "<memory-context>",
    FORMAT_TIMELINE: "## Relevant Memories\n",
    FORMAT_BULLETS: "**Context from Memory:**\n",
}

_FOOTERS = {
    FORMAT_STRUCTURED: "</memory-context>",
    FORMAT_TIMELINE: "\n*Use memory_search for more context.*",
    FORMAT_BULLETS: "\n*Use memory_search for more context.*",
}


class MemoryContextBuilder:
    """
    *source* is anything with ``search(SearchOptions)`` and
    ``get_recent(limit, types)`` (the manager, or the retrieval engine).

    Usage::

        builder = MemoryContextBuilder(manager, config.injection)
        system_prompt += builder.build_context("refactor the auth module")
    """

    def __init__(self, source: Any, config: Optional[InjectionConfig] = None,
                 include_decisions: bool = True):
        self.source = source
        self.cfg = config or InjectionConfig()
        self.include_decisions = include_decisions

    @property
    def header(self) -> str:
        return _HEADERS.get(self.cfg.format, _HEADERS[FORMAT_STRUCTURED])

    @property
    def footer(self) -> str:
        return _FOOTERS.get(self.cfg.format, _FOOTERS[FORMAT_STRUCTURED])

    def format_memory(self, memory: Memory, score: float) -> str:
        return _FORMATTERS.get(self.cfg.format, format_structured)(memory, score)

    # ── Public builders ──────────────────────────────────────

    def build_context(self, query: str) -> str:
        if not self.cfg.enabled:
            return ""
        try:
            results = self.source.search(SearchOptions(
                query=query, limit=SEARCH_LIMIT, types=list(self.cfg.priority_types),
            ))
            decisions: List[Memory] = []
            if self.include_decisions:
                shown = {r.memory.id for r in results}
                decisions = [
                    m for m in self.source.get_recent(RECENT_DECISIONS, [MEMORY_TYPE_DECISION])
                    if m.id not in shown
                ]
            return self._assemble(self.header, self.footer, results, decisions)
        except Exception as e:
            logger.warning("Memory context unavailable: %s", e)
            return ""

    def build_recent_context(self, limit: int = 10) -> str:
        """Context without a query, e.g. at session start."""
        if not self.cfg.enabled:
            return ""
        try:
            memories = self.source.get_recent(limit, list(self.cfg.priority_types))
        except Exception as e:
            logger.warning("Recent memory context unavailable: %s", e)
            return ""
        results = [
            SearchResult(memory=m, score=1.0 - i * 0.05, match_type=MATCH_FTS)
            for i, m in enumerate(memories)
        ]
        return self._assemble(self.header, self.footer, results, [])

    def build_phase_context(self, phase: str) -> str:
        if not self.cfg.enabled:
            return ""
        try:
            results = self.source.search(SearchOptions(
                query=f"{phase} phase workflow", limit=PHASE_SEARCH_LIMIT,
            ))
        except Exception as e:
            logger.warning("Phase memory context unavailable: %s", e)
            return ""
        opening = f'<memory-context phase="{html.escape(phase, quote=True)}">'
        return self._assemble(opening, "</memory-context>", results, [])

    # ── Assembly ─────────────────────────────────────────────

    def _assemble(
        self,
        header: str,
        footer: str,
        results: Sequence[SearchResult],
        decisions: Sequence[Memory],
    ) -> str:
        budget = self.cfg.budget_tokens
        used = _cost(header) + _cost(footer)
        if used > budget:
            return ""

        reserve = 0
        if decisions:
            reserve = min(DECISIONS_RESERVE_TOKENS, self._decisions_cost(decisions))

        entries: List[str] = []
        for r in results:
            piece = self.format_memory(r.memory, r.score)
            cost = _cost(piece)
            if used + cost > budget - reserve:
                break
            entries.append(piece)
            used += cost

        decisions_block = self._format_decisions(decisions, budget - used) if decisions else None
        if not entries and decisions_block is None:
            return ""

        pieces = [header, *entries]
        if decisions_block is not None:
            pieces.append(decisions_block)
        pieces.append(footer)
        return "\n".join(pieces)

    @staticmethod
    def _decision_line(memory: Memory) -> str:
        return f'  <decision date="{_date(memory.created_at)}">{memory.title}</decision>'

    def _decisions_cost(self, decisions: Sequence[Memory]) -> int:
        lines = ["<recent-decisions>", *(self._decision_line(d) for d in decisions),
                 "</recent-decisions>"]
        return _cost("\n".join(lines))

    def _format_decisions(self, decisions: Sequence[Memory], budget: int) -> Optional[str]:
        opening, closing = "<recent-decisions>", "</recent-decisions>"
        # The block is one piece: its lines joined, plus the trailing joiner.
        chars_left = budget * 4 - len(opening) - len(closing) - 3
        lines: List[str] = []
        for d in decisions:
            line = self._decision_line(d)
            if len(line) + 1 > chars_left:
                break
            lines.append(line)
            chars_left -= len(line) + 1
        if not lines:
            return None
        return "\n".join([opening, *lines, closing])
