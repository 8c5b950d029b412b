"""
Tests for engram/memory/retrieval.py — hybrid search with RRF.

Covers:
* reciprocal_rank_fusion() — contributions, tagging, rank monotonicity
* search() — fts / vector / hybrid tagging, fused ordering, limit
* Degradation — throwing, slow or disabled vector path == FTS-only
* Filters applied to vector-only hits
* Optional re-rank — same candidate set, new order
* Input edge cases and passthrough accessors
"""

from __future__ import annotations

import time

import numpy as np
import pytest

from engram.memory.retrieval import (
    MemoryRetrieval,
    reciprocal_rank_fusion,
    rrf_contribution,
)
from engram.memory.settings import RetrievalConfig
from engram.memory.types import HybridWeight, MemoryInput, SearchOptions

DIMS = 8  # matches the vectors fixture


def _unit(i):
    v = np.zeros(DIMS, dtype=np.float32)
    v[i] = 1.0
    return v


def _ids(results):
    return [r.memory.id for r in results]


@pytest.fixture
def retrieval(storage, vectors, embedder):
    engine = MemoryRetrieval(storage, vectors, embedder, RetrievalConfig())
    yield engine
    engine.close()


class SlowEmbedder:
    dimensions = DIMS

    def generate(self, text):
        time.sleep(0.5)
        return _unit(0)


# ── Fusion ────────────────────────────────────────────────────────────

class TestFusion:
    def test_contribution(self):
        assert rrf_contribution(0, 1.0, 60) == pytest.approx(1 / 61)
        assert rrf_contribution(2, 0.6, 60) == pytest.approx(0.6 / 63)

    def test_tags_and_sums(self):
        fused = reciprocal_rank_fusion([1, 2], [2, 3], 0.4, 0.6, 60)
        assert fused[1].match_type == "fts"
        assert fused[2].match_type == "hybrid"
        assert fused[3].match_type == "vector"
        assert fused[2].score == pytest.approx(0.4 / 62 + 0.6 / 61)

    def test_duplicate_ids_count_once(self):
        fused = reciprocal_rank_fusion([7, 7], [], 1.0, 1.0, 60)
        assert fused[7].score == pytest.approx(1 / 61)

    def test_rank_improvement_never_lowers_score(self):
        others = [10, 11, 12, 13, 14]
        vector_list = [11, 99, 12]
        for worse in range(len(others) + 1):
            for better in range(worse):
                lo = list(others)
                lo.insert(worse, 99)
                hi = list(others)
                hi.insert(better, 99)
                s_lo = reciprocal_rank_fusion(lo, vector_list)[99].score
                s_hi = reciprocal_rank_fusion(hi, vector_list)[99].score
                assert s_hi >= s_lo

    def test_vector_rank_improvement_never_lowers_score(self):
        fts_list = [5, 6, 42]
        for pos in range(1, 5):
            worse = [1, 2, 3, 4]
            worse.insert(pos, 42)
            better = [1, 2, 3, 4]
            better.insert(pos - 1, 42)
            assert (reciprocal_rank_fusion(fts_list, better)[42].score
                    >= reciprocal_rank_fusion(fts_list, worse)[42].score)


# ── Hybrid search ─────────────────────────────────────────────────────

class TestSearch:
    def test_disjoint_fts_and_vector_hits(self, storage, vectors, embedder, retrieval):
        a = storage.insert(MemoryInput(type="note", title="kafka consumer lag", content="offsets"))
        b = storage.insert(MemoryInput(type="note", title="stream backpressure", content="slow sinks"))
        embedder.axis("kafka", 0)
        vectors.store_embedding(b.id, _unit(0))

        results = retrieval.search(SearchOptions(query="kafka", limit=5))
        assert [(r.memory.id, r.match_type) for r in results] == [(b.id, "vector"), (a.id, "fts")]
        assert results[0].score == pytest.approx(0.6 / 61)
        assert results[1].score == pytest.approx(0.4 / 61)

    def test_hybrid_tag(self, storage, vectors, embedder, retrieval):
        a = storage.insert(MemoryInput(type="note", title="redis eviction", content="lru"))
        embedder.axis("redis", 2)
        vectors.store_embedding(a.id, _unit(2))
        (r,) = retrieval.search(SearchOptions(query="redis", limit=5))
        assert r.match_type == "hybrid"
        assert r.score == pytest.approx(0.4 / 61 + 0.6 / 61)

    def test_limit_applied_after_fusion(self, storage, vectors, retrieval):
        for i in range(6):
            m = storage.insert(MemoryInput(type="note", title=f"graph node {i}", content="x"))
            vectors.store_embedding(m.id, _unit(i % DIMS))
        assert len(retrieval.search(SearchOptions(query="graph", limit=3))) == 3

    def test_custom_hybrid_weight(self, storage, vectors, embedder, retrieval):
        a = storage.insert(MemoryInput(type="note", title="cron schedule", content="x"))
        b = storage.insert(MemoryInput(type="note", title="timer wheel", content="y"))
        embedder.axis("cron", 1)
        vectors.store_embedding(b.id, _unit(1))
        results = retrieval.search(SearchOptions(
            query="cron", limit=5, hybrid_weight=HybridWeight(fts=0.9, vector=0.1),
        ))
        assert _ids(results) == [a.id, b.id]

    @pytest.mark.parametrize("query,limit", [("", 5), ("   ", 5), ("kafka", 0), ("kafka", -1)])
    def test_empty_inputs(self, storage, retrieval, query, limit):
        storage.insert(MemoryInput(type="note", title="kafka", content="x"))
        assert retrieval.search(SearchOptions(query=query, limit=limit)) == []


# ── Degradation ───────────────────────────────────────────────────────

class TestDegradation:
    def _seed(self, storage, vectors):
        for i, title in enumerate(["lambda cold start", "lambda memory size", "lambda timeout tuning"]):
            m = storage.insert(MemoryInput(type="note", title=title, content=f"note {i} lambda"))
            vectors.store_embedding(m.id, _unit(i))

    def test_throwing_embedder_matches_fts_only(self, storage, vectors, broken_embedder):
        self._seed(storage, vectors)
        engine = MemoryRetrieval(storage, vectors, broken_embedder)
        try:
            opts = SearchOptions(query="lambda", limit=3)
            hybrid = engine.search(opts)
            fts_only = engine.search_fts_only(opts)
            assert _ids(hybrid) == _ids(fts_only)
            assert len(hybrid) == 3
            assert all(r.match_type == "fts" for r in hybrid)
        finally:
            engine.close()

    def test_slow_embedder_times_out(self, storage, vectors):
        self._seed(storage, vectors)
        engine = MemoryRetrieval(storage, vectors, SlowEmbedder(), RetrievalConfig(vector_timeout=0.05))
        try:
            opts = SearchOptions(query="lambda", limit=3)
            assert _ids(engine.search(opts)) == _ids(engine.search_fts_only(opts))
        finally:
            engine.close()

    def test_vector_disabled_by_config(self, storage, vectors, embedder):
        self._seed(storage, vectors)
        engine = MemoryRetrieval(storage, vectors, embedder, RetrievalConfig(vector_enabled=False))
        try:
            results = engine.search(SearchOptions(query="lambda", limit=3))
            assert all(r.match_type == "fts" for r in results)
            assert embedder.calls == []
        finally:
            engine.close()

    def test_unavailable_index(self, storage, embedder):
        from engram.memory.vector_store import VectorStore

        storage.insert(MemoryInput(type="note", title="lambda", content="x"))
        engine = MemoryRetrieval(storage, VectorStore(storage, DIMS, enabled=False), embedder)
        try:
            assert len(engine.search(SearchOptions(query="lambda"))) == 1
        finally:
            engine.close()

    def test_wrong_query_dimension_degrades(self, storage, vectors):
        self._seed(storage, vectors)

        class ShortEmbedder:
            def generate(self, text):
                return np.ones(3, dtype=np.float32)

        engine = MemoryRetrieval(storage, vectors, ShortEmbedder())
        try:
            opts = SearchOptions(query="lambda", limit=3)
            assert _ids(engine.search(opts)) == _ids(engine.search_fts_only(opts))
        finally:
            engine.close()


# ── Filters on vector-only hits ───────────────────────────────────────

class TestVectorFilters:
    def test_private_vector_hit_excluded(self, storage, vectors, embedder, retrieval):
        secret = storage.insert(MemoryInput(
            type="note", title="journal", content="feelings", visibility="private",
        ))
        embedder.axis("mood", 4)
        vectors.store_embedding(secret.id, _unit(4))
        assert retrieval.search(SearchOptions(query="mood", limit=5)) == []
        results = retrieval.search(SearchOptions(query="mood", limit=5, include_private=True))
        assert _ids(results) == [secret.id]

    def test_type_and_importance_filters(self, storage, vectors, embedder, retrieval):
        note = storage.insert(MemoryInput(type="note", title="n", content="c", importance=0.9))
        low = storage.insert(MemoryInput(type="decision", title="d1", content="c", importance=0.1))
        keep = storage.insert(MemoryInput(type="decision", title="d2", content="c", importance=0.8))
        embedder.axis("choice", 3)
        for m in (note, low, keep):
            vectors.store_embedding(m.id, _unit(3))
        results = retrieval.search(SearchOptions(
            query="choice", limit=5, types=["decision"], min_importance=0.5,
        ))
        assert _ids(results) == [keep.id]


# ── Re-rank ───────────────────────────────────────────────────────────

class TestRerank:
    def _seed(self, storage, vectors, embedder):
        a = storage.insert(MemoryInput(type="note", title="deploy pipeline", content="stages"))
        b = storage.insert(MemoryInput(type="note", title="release notes", content="we deploy weekly"))
        embedder.axis("deploy", 0)
        vectors.store_embedding(a.id, _unit(1))
        vectors.store_embedding(b.id, _unit(0))
        return a, b

    def test_rerank_reorders_same_set(self, storage, vectors, embedder):
        a, b = self._seed(storage, vectors, embedder)
        opts = SearchOptions(query="deploy", limit=5, hybrid_weight=HybridWeight(fts=1.0, vector=0.0))

        plain = MemoryRetrieval(storage, vectors, embedder, RetrievalConfig())
        ranked = MemoryRetrieval(storage, vectors, embedder, RetrievalConfig(reranking=True))
        try:
            before = plain.search(opts)
            after = ranked.search(opts)
        finally:
            plain.close()
            ranked.close()

        assert _ids(before) == [a.id, b.id]
        assert _ids(after) == [b.id, a.id]
        assert set(_ids(before)) == set(_ids(after))
        assert after[0].score == pytest.approx(0.7 * (1.0 / 62) + 0.3 * 1.0)
        assert after[1].score == pytest.approx(0.7 * (1.0 / 61))


# ── Passthrough ───────────────────────────────────────────────────────

class TestPassthrough:
    def test_accessors_bypass_fusion(self, storage, clock, retrieval):
        a = storage.insert(MemoryInput(type="decision", title="a", content="x",
                                       concepts=["db"], phase="plan", session_id="s"))
        clock.advance(1)
        b = storage.insert(MemoryInput(type="note", title="b", content="y", session_id="s"))
        assert _ids_list(retrieval.get_recent(5)) == [b.id, a.id]
        assert _ids_list(retrieval.get_recent(5, ["decision"])) == [a.id]
        assert _ids_list(retrieval.get_by_concepts(["db"])) == [a.id]
        assert _ids_list(retrieval.get_by_phase("plan")) == [a.id]
        assert _ids_list(retrieval.get_by_session("s")) == [a.id, b.id]


def _ids_list(memories):
    return [m.id for m in memories]
