"""
Tests for engram/memory/sqlite_store.py and schema.py.

Covers:
* insert() — id assignment, timestamps, canonical importance, caps
* get_by_id() / get_many() / touch()
* update() / delete() — NotFound returns None / False
* search_fts() — BM25 ranking, filters, highlight, hostile input
* get_recent() ordering, concepts / phase / session lookups
* Retention — delete_older_than(), trim_to_max() order and batching
* Schema — version, stats, FTS rebuild
"""

from __future__ import annotations

import pytest

from engram.memory import sqlite_store
from engram.memory.sqlite_store import MemoryStorage, build_fts_query
from engram.memory.types import MemoryInput, MemoryUpdate, SearchFilters


def _mk(title, content="body", **kw):
    kw.setdefault("type", "note")
    return MemoryInput(title=title, content=content, **kw)


# ── Create / read ─────────────────────────────────────────────────────

class TestInsert:
    def test_assigns_id_and_timestamps(self, storage, clock):
        m = storage.insert(_mk("first"))
        assert m.id > 0
        assert m.created_at == m.updated_at == m.accessed_at == clock.now
        assert m.access_count == 0

    def test_ids_are_unique(self, storage):
        ids = {storage.insert(_mk(f"m{i}")).id for i in range(5)}
        assert len(ids) == 5

    def test_importance_canonicalised(self, storage):
        assert storage.insert(_mk("a", importance=7)).importance == 1.0
        assert storage.insert(_mk("b", importance=0.25)).importance == pytest.approx(0.25)
        assert storage.insert(_mk("c", importance=None)).importance == pytest.approx(0.5)
        assert storage.insert(_mk("d", importance=-3)).importance == 0.0
        assert storage.insert(_mk("e", importance=float("nan"))).importance == pytest.approx(0.5)

    def test_importance_mapping_is_monotonic(self, storage):
        values = [0, 0.1, 0.5, 0.99, 1, 1.5, 2, 5, 9.5, 10]
        stored = [storage.insert(_mk(f"m{i}", importance=v)).importance for i, v in enumerate(values)]
        assert stored == sorted(stored)
        assert all(0.0 <= s <= 1.0 for s in stored)

    def test_title_capped_and_type_normalised(self, storage):
        m = storage.insert(_mk("t" * 300, type="bogus"))
        assert len(m.title) == 100
        assert m.type == "observation"

    def test_lists_round_trip(self, storage):
        m = storage.insert(_mk("x", facts=["a", "b"], concepts=["api"], source_files=["/f.py"]))
        again = storage.get_by_id(m.id)
        assert again.facts == ["a", "b"]
        assert again.concepts == ["api"]
        assert again.source_files == ["/f.py"]

    def test_insert_batch_is_atomic(self, storage, monkeypatch):
        storage.insert_batch([_mk("a"), _mk("b")])
        assert storage.count() == 2

        calls = {"n": 0}
        original = MemoryStorage._insert_row

        def flaky(self, conn, item, now):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("disk full")
            return original(self, conn, item, now)

        monkeypatch.setattr(MemoryStorage, "_insert_row", flaky)
        with pytest.raises(RuntimeError):
            storage.insert_batch([_mk("c"), _mk("d")])
        assert storage.count() == 2


class TestRead:
    def test_missing_id(self, storage):
        assert storage.get_by_id(999) is None

    def test_touch_on_read(self, storage, clock):
        m = storage.insert(_mk("x"))
        clock.advance(60)
        again = storage.get_by_id(m.id, touch=True)
        assert again.access_count == 1
        assert again.accessed_at == clock.now
        assert again.updated_at == m.updated_at

    def test_get_many_skips_missing(self, storage):
        a = storage.insert(_mk("a"))
        found = storage.get_many([a.id, 12345])
        assert list(found) == [a.id]


# ── Update / delete ───────────────────────────────────────────────────

class TestUpdateDelete:
    def test_update_fields(self, storage, clock):
        m = storage.insert(_mk("old title"))
        clock.advance(5)
        updated = storage.update(m.id, MemoryUpdate(title="new title", importance=0.9))
        assert updated.title == "new title"
        assert updated.importance == pytest.approx(0.9)
        assert updated.updated_at == clock.now
        assert updated.created_at == m.created_at

    def test_update_reindexes_fts(self, storage):
        m = storage.insert(_mk("alpha"))
        storage.update(m.id, MemoryUpdate(title="omega"))
        assert storage.search_fts("alpha") == []
        assert [r.memory.id for r in storage.search_fts("omega")] == [m.id]

    def test_update_missing_returns_none(self, storage):
        assert storage.update(42, MemoryUpdate(title="x")) is None

    def test_delete(self, storage):
        m = storage.insert(_mk("gone soon"))
        assert storage.delete(m.id) is True
        assert storage.get_by_id(m.id) is None
        assert storage.search_fts("gone") == []
        assert storage.delete(m.id) is False


# ── FTS ───────────────────────────────────────────────────────────────

class TestSearchFts:
    def test_title_outranks_content(self, storage):
        body = storage.insert(_mk("unrelated", content="mentions sqlite once"))
        title = storage.insert(_mk("sqlite tuning", content="pragmas"))
        ids = [r.memory.id for r in storage.search_fts("sqlite")]
        assert ids == [title.id, body.id]

    def test_prefix_match(self, storage):
        m = storage.insert(_mk("authentication flow"))
        assert [r.memory.id for r in storage.search_fts("auth")] == [m.id]

    def test_result_shape(self, storage):
        storage.insert(_mk("retry policy", content="exponential retry backoff"))
        r = storage.search_fts("retry")[0]
        assert r.match_type == "fts"
        assert r.score > 0
        assert "<mark>" in r.highlighted

    def test_type_filter(self, storage):
        storage.insert(_mk("cache layer", type="note"))
        d = storage.insert(_mk("cache decision", type="decision"))
        results = storage.search_fts("cache", filters=SearchFilters(types=["decision"]))
        assert [r.memory.id for r in results] == [d.id]

    def test_min_importance_filter(self, storage):
        storage.insert(_mk("queue low", importance=0.2))
        hi = storage.insert(_mk("queue high", importance=0.9))
        results = storage.search_fts("queue", filters=SearchFilters(min_importance=0.5))
        assert [r.memory.id for r in results] == [hi.id]

    def test_private_excluded_by_default(self, storage):
        storage.insert(_mk("diary entry", visibility="private"))
        assert storage.search_fts("diary") == []
        assert len(storage.search_fts("diary", filters=SearchFilters(include_private=True))) == 1

    def test_concept_filter(self, storage):
        storage.insert(_mk("parser", concepts=["python"]))
        ts = storage.insert(_mk("parser rewrite", concepts=["typescript"]))
        results = storage.search_fts("parser", filters=SearchFilters(concepts=["typescript"]))
        assert [r.memory.id for r in results] == [ts.id]

    @pytest.mark.parametrize("text", ['"', "(", "AND OR NOT", "title:*", "  ", "^{}[]"])
    def test_hostile_input_never_raises(self, storage, text):
        storage.insert(_mk("anything"))
        assert isinstance(storage.search_fts(text), list)

    def test_build_fts_query(self):
        assert build_fts_query('auth "flow" (x)') == '"auth"* OR "flow"* OR "x"*'
        assert build_fts_query("") == ""


# ── Listing ───────────────────────────────────────────────────────────

class TestListing:
    def test_get_recent_newest_first(self, storage, clock):
        a = storage.insert(_mk("A"))
        clock.advance(1)
        b = storage.insert(_mk("B"))
        clock.advance(1)
        c = storage.insert(_mk("C"))
        assert [m.id for m in storage.get_recent(2)] == [c.id, b.id]
        assert a.id not in [m.id for m in storage.get_recent(2)]

    def test_get_recent_ties_break_on_id(self, storage):
        a = storage.insert(_mk("A"))
        b = storage.insert(_mk("B"))
        assert [m.id for m in storage.get_recent(2)] == [b.id, a.id]

    def test_get_recent_types(self, storage):
        storage.insert(_mk("n", type="note"))
        d = storage.insert(_mk("d", type="decision"))
        assert [m.id for m in storage.get_recent(5, ["decision"])] == [d.id]

    def test_get_by_concepts(self, storage):
        lo = storage.insert(_mk("a", concepts=["api"], importance=0.3))
        hi = storage.insert(_mk("b", concepts=["api", "db"], importance=0.8))
        storage.insert(_mk("c", concepts=["ui"]))
        assert [m.id for m in storage.get_by_concepts(["api"])] == [hi.id, lo.id]
        assert storage.get_by_concepts([]) == []

    def test_get_by_phase(self, storage):
        p = storage.insert(_mk("p", phase="build"))
        storage.insert(_mk("q", phase="plan"))
        assert [m.id for m in storage.get_by_phase("build")] == [p.id]

    def test_get_by_session_oldest_first(self, storage, clock):
        a = storage.insert(_mk("a", session_id="s1"))
        clock.advance(1)
        b = storage.insert(_mk("b", session_id="s1"))
        storage.insert(_mk("c", session_id="s2"))
        assert [m.id for m in storage.get_by_session("s1")] == [a.id, b.id]

    def test_count(self, storage):
        storage.insert(_mk("a"))
        storage.insert(_mk("b", visibility="private"))
        storage.insert(_mk("c", type="decision"))
        assert storage.count() == 2
        assert storage.count(include_private=True) == 3
        assert storage.count(types=["decision"]) == 1


# ── Retention ─────────────────────────────────────────────────────────

class TestRetention:
    def test_delete_older_than(self, storage, clock):
        old = storage.insert(_mk("old"))
        clock.advance(31 * 86400)
        new = storage.insert(_mk("new"))
        assert storage.delete_older_than(30) == 1
        assert storage.get_by_id(old.id) is None
        assert storage.get_by_id(new.id) is not None

    def test_trim_order(self, storage, clock):
        keep_hi = storage.insert(_mk("hi", importance=0.9))
        clock.advance(1)
        lo_old = storage.insert(_mk("lo old", importance=0.1))
        clock.advance(1)
        lo_new = storage.insert(_mk("lo new", importance=0.1))
        clock.advance(1)
        mid = storage.insert(_mk("mid", importance=0.5))

        assert storage.trim_to_max(2) == 2
        remaining = {m.id for m in storage.get_recent(10)}
        assert remaining == {keep_hi.id, mid.id}
        assert lo_old.id not in remaining and lo_new.id not in remaining

    def test_trim_tie_on_id(self, storage):
        a = storage.insert(_mk("a", importance=0.2))
        b = storage.insert(_mk("b", importance=0.2))
        storage.trim_to_max(1)
        assert storage.get_by_id(a.id) is None
        assert storage.get_by_id(b.id) is not None

    def test_trim_noop_under_ceiling(self, storage):
        storage.insert(_mk("a"))
        assert storage.trim_to_max(10) == 0

    def test_sweep_runs_in_batches(self, storage, monkeypatch):
        monkeypatch.setattr(sqlite_store, "DELETE_BATCH", 3)
        for i in range(8):
            storage.insert(_mk(f"m{i}", importance=0.1))
        assert storage.trim_to_max(1) == 7
        assert storage.count() == 1
        assert storage.search_fts("m0") == []


# ── Schema ────────────────────────────────────────────────────────────

class TestSchema:
    def test_version(self, storage):
        assert storage.schema_version == 1

    def test_reopen_keeps_data(self, tmp_path, clock):
        path = tmp_path / "re.db"
        s1 = MemoryStorage(path, clock=clock)
        m = s1.insert(_mk("persisted"))
        s1.close()
        s2 = MemoryStorage(path, clock=clock)
        assert s2.get_by_id(m.id).title == "persisted"
        assert s2.search_fts("persisted")[0].memory.id == m.id
        s2.close()

    def test_stats(self, storage, clock):
        storage.insert(_mk("a", type="note"))
        clock.advance(10)
        storage.insert(_mk("b", type="decision", visibility="private"))
        stats = storage.stats()
        assert stats["total"] == 2
        assert stats["by_type"] == {"note": 1, "decision": 1}
        assert stats["by_visibility"] == {"public": 1, "private": 1}
        assert stats["newest"] - stats["oldest"] == 10

    def test_rebuild_and_optimize(self, storage):
        m = storage.insert(_mk("rebuild me"))
        storage.rebuild_fts()
        storage.optimize_fts()
        assert storage.search_fts("rebuild")[0].memory.id == m.id

    def test_close_is_idempotent(self, tmp_path):
        s = MemoryStorage(tmp_path / "c.db")
        s.close()
        s.close()
        assert s.closed
