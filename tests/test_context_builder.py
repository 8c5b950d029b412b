"""
Tests for engram/memory/context_builder.py.

Covers:
* Token budget — output never exceeds budget_tokens * 4 characters,
  entries are whole, for every format, with and without decisions
* Formats — structured / timeline / bullets entry layouts
* Recent decisions section
* build_recent_context() and build_phase_context()
* Empty and failing sources return ""
"""

from __future__ import annotations

from datetime import datetime

import pytest

from engram.memory.context_builder import (
    MemoryContextBuilder,
    estimate_tokens,
    format_bullets,
    format_structured,
    format_timeline,
)
from engram.memory.retrieval import MemoryRetrieval
from engram.memory.settings import InjectionConfig
from engram.memory.types import MemoryInput

FORMATS = ("structured", "timeline", "bullets")


def _day(ts):
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


@pytest.fixture
def source(storage):
    engine = MemoryRetrieval(storage, None, None)
    yield engine
    engine.close()


def _seed_observations(storage, n=20, word="widget"):
    for i in range(n):
        storage.insert(MemoryInput(
            type="observation",
            title=f"{word} finding {i}",
            content=f"{word} " + "detail " * 60,
            facts=[f"fact {i}a", f"fact {i}b"],
        ))


class BrokenSource:
    def search(self, options):
        raise RuntimeError("index offline")

    def get_recent(self, limit=10, types=None):
        raise RuntimeError("index offline")


# ── Budget ────────────────────────────────────────────────────────────

class TestBudget:
    @pytest.mark.parametrize("fmt", FORMATS)
    def test_budget_100_never_exceeded(self, storage, source, fmt):
        _seed_observations(storage)
        builder = MemoryContextBuilder(source, InjectionConfig(budget_tokens=100, format=fmt))
        out = builder.build_context("widget")
        assert len(out) / 4 <= 100
        assert estimate_tokens(out) <= 100

    @pytest.mark.parametrize("fmt", FORMATS)
    def test_budget_with_decisions(self, storage, source, fmt):
        _seed_observations(storage)
        for i in range(5):
            storage.insert(MemoryInput(type="decision", title=f"Adopt plan {i}", content="why"))
        builder = MemoryContextBuilder(source, InjectionConfig(budget_tokens=100, format=fmt))
        assert len(builder.build_context("widget")) <= 400

    def test_only_whole_entries(self, storage, source):
        _seed_observations(storage)
        builder = MemoryContextBuilder(source, InjectionConfig(budget_tokens=300, format="structured"))
        out = builder.build_context("widget")
        opened = out.count("<memory type=")
        assert opened >= 1
        assert opened == out.count("</memory>")
        assert out.startswith("<memory-context>")
        assert out.endswith("</memory-context>")

    def test_larger_budget_fits_more(self, storage, source):
        _seed_observations(storage)
        small = MemoryContextBuilder(source, InjectionConfig(budget_tokens=200, format="bullets"))
        large = MemoryContextBuilder(source, InjectionConfig(budget_tokens=2000, format="bullets"))
        n_small = small.build_context("widget").count("- **[")
        n_large = large.build_context("widget").count("- **[")
        assert 0 < n_small < n_large
        assert len(large.build_context("widget")) <= 8000

    def test_budget_too_small_for_any_entry(self, storage, source):
        _seed_observations(storage, n=3)
        builder = MemoryContextBuilder(source, InjectionConfig(budget_tokens=12, format="structured"))
        assert builder.build_context("widget") == ""


# ── Formats ───────────────────────────────────────────────────────────

class TestFormats:
    def _memory(self, storage, **kw):
        kw.setdefault("type", "decision")
        return storage.insert(MemoryInput(title="Use WAL", content="c" * 250, **kw))

    def test_structured(self, storage):
        m = self._memory(storage, facts=["a", "b", "c", "d"], importance=0.8)
        text = format_structured(m, 0.0123)
        assert text.startswith(
            f'<memory type="decision" date="{_day(m.created_at)}" importance="0.80" '
            f'score="0.01" facts="a; b; c">'
        )
        assert "  <title>Use WAL</title>" in text
        assert f"  <content>{'c' * 200}...</content>" in text
        assert text.endswith("</memory>")

    def test_structured_without_facts(self, storage):
        m = self._memory(storage)
        assert "facts=" not in format_structured(m, 1.0)

    def test_timeline(self, storage):
        m = self._memory(storage)
        text = format_timeline(m, 0.5)
        assert text == (
            f"### [decision] Use WAL\n*{_day(m.created_at)} | Score: 0.50*\n"
            f"{'c' * 150}...\n"
        )

    def test_bullets(self, storage):
        m = storage.insert(MemoryInput(type="todo", title="Add index", content="short"))
        assert format_bullets(m, 1.0) == f"- **[todo]** Add index ({_day(m.created_at)}): short"

    def test_headers_and_footers(self, storage, source):
        _seed_observations(storage, n=2)
        timeline = MemoryContextBuilder(source, InjectionConfig(format="timeline")).build_context("widget")
        assert timeline.startswith("## Relevant Memories\n")
        assert timeline.endswith("*Use memory_search for more context.*")
        bullets = MemoryContextBuilder(source, InjectionConfig(format="bullets")).build_context("widget")
        assert bullets.startswith("**Context from Memory:**\n")


# ── Decisions section ─────────────────────────────────────────────────

class TestDecisions:
    def test_recent_decisions_appended(self, storage, source, clock):
        _seed_observations(storage, n=2)
        clock.advance(1)
        storage.insert(MemoryInput(type="decision", title="Adopt SQLite", content="embedded"))
        out = MemoryContextBuilder(source, InjectionConfig(format="structured")).build_context("widget")
        assert "<recent-decisions>" in out
        assert f'  <decision date="{_day(clock.now)}">Adopt SQLite</decision>' in out
        assert out.index("</recent-decisions>") < out.index("</memory-context>")

    def test_decision_already_shown_not_repeated(self, storage, source):
        storage.insert(MemoryInput(type="decision", title="widget storage", content="use files"))
        out = MemoryContextBuilder(source, InjectionConfig(format="structured")).build_context("widget")
        assert "<recent-decisions>" not in out
        assert out.count("widget storage") == 1

    def test_decisions_alone(self, storage, source):
        storage.insert(MemoryInput(type="decision", title="Adopt SQLite", content="embedded"))
        out = MemoryContextBuilder(source, InjectionConfig()).build_context("unrelated query")
        assert "Adopt SQLite" in out

    def test_decisions_can_be_disabled(self, storage, source):
        storage.insert(MemoryInput(type="decision", title="Adopt SQLite", content="embedded"))
        builder = MemoryContextBuilder(source, InjectionConfig(), include_decisions=False)
        assert builder.build_context("unrelated query") == ""


# ── Recent / phase ────────────────────────────────────────────────────

class TestOtherBuilders:
    def test_recent_context_scores(self, storage, source, clock):
        storage.insert(MemoryInput(type="observation", title="older", content="x"))
        clock.advance(1)
        storage.insert(MemoryInput(type="observation", title="newer", content="y"))
        out = MemoryContextBuilder(source, InjectionConfig(format="timeline")).build_recent_context(5)
        assert out.index("newer") < out.index("older")
        assert "Score: 1.00" in out
        assert "Score: 0.95" in out

    def test_recent_context_respects_priority_types(self, storage, source):
        storage.insert(MemoryInput(type="note", title="scratch", content="x"))
        assert MemoryContextBuilder(source, InjectionConfig()).build_recent_context() == ""

    def test_phase_context(self, storage, source):
        storage.insert(MemoryInput(type="session_summary", title="build phase notes",
                                   content="workflow for the build"))
        out = MemoryContextBuilder(source, InjectionConfig(format="bullets")).build_phase_context("build")
        assert out.startswith('<memory-context phase="build">')
        assert out.endswith("</memory-context>")
        assert "build phase notes" in out

    def test_phase_context_empty(self, source):
        assert MemoryContextBuilder(source, InjectionConfig()).build_phase_context("deploy") == ""


# ── Failure handling ──────────────────────────────────────────────────

class TestFailures:
    def test_no_memories(self, source):
        assert MemoryContextBuilder(source, InjectionConfig()).build_context("anything") == ""

    def test_source_failure_is_silent(self):
        builder = MemoryContextBuilder(BrokenSource(), InjectionConfig())
        assert builder.build_context("q") == ""
        assert builder.build_recent_context() == ""
        assert builder.build_phase_context("plan") == ""

    def test_disabled(self, storage, source):
        _seed_observations(storage, n=2)
        builder = MemoryContextBuilder(source, InjectionConfig(enabled=False))
        assert builder.build_context("widget") == ""
        assert builder.build_recent_context() == ""
