"""
Hybrid retrieval — keyword and vector rankings fused with RRF.

``search`` in five steps:

1. **Fan out.**  The vector branch (embed query, nearest-neighbour
   lookup) is submitted to a worker thread; the FTS query runs on the
   caller's thread.  Both ask for ``2 × limit`` candidates.
2. **Fan in.**  The caller waits at most ``vector_timeout`` seconds for
   the vector branch.  A timeout, an exception or an unavailable index
   all mean "no vector results": the search degrades to FTS-only and
   nothing is raised.
3. **Reciprocal Rank Fusion.**  Rank *i* (0-based) in a list contributes
   ``weight / (rrf_k + i + 1)``.  Ids in both lists sum their
   contributions and are tagged ``hybrid``; the others keep ``fts`` or
   ``vector``.
4. Sort by fused score, descending, and keep ``limit``.
5. **Optional re-rank.**  ``0.7 × fused + 0.3 × cosine(query, stored)``
   (cosine 0 when a record has no vector).  Re-ordering only; the
   candidate set does not change.

The vector index only stores ids, so vector-only hits are joined back
to records with a point lookup and run through the same filters as the
FTS query.

Consistency: a record is keyword-searchable as soon as it is inserted,
but only vector-searchable once the background worker has stored its
embedding.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .embeddings import cosine_similarity
from .errors import TransientSearchError
from .settings import RetrievalConfig
from .types import (
    MATCH_FTS,
    MATCH_HYBRID,
    MATCH_VECTOR,
    HybridWeight,
    Memory,
    SearchFilters,
    SearchOptions,
    SearchResult,
    VectorHit,
)

logger = logging.getLogger(__name__)

RERANK_FUSED_WEIGHT = 0.7
RERANK_SEMANTIC_WEIGHT = 0.3
OVERFETCH = 2


# ------------------------------------------------------------------
# Fusion
# ------------------------------------------------------------------

@dataclass
class FusedScore:
    score: float = 0.0
    in_fts: bool = False
    in_vector: bool = False

    @property
    def match_type(self) -> str:
        if self.in_fts and self.in_vector:
            return MATCH_HYBRID
        return MATCH_FTS if self.in_fts else MATCH_VECTOR


def rrf_contribution(rank: int, weight: float, k: int = 60) -> float:
    """Contribution of the item at 0-based *rank*."""
    return weight / (k + rank + 1)


def reciprocal_rank_fusion(
    fts_ids: Sequence[int],
    vector_ids: Sequence[int],
    fts_weight: float = 0.4,
    vector_weight: float = 0.6,
    k: int = 60,
) -> Dict[int, FusedScore]:
    """
    Fuse two ranked id lists.  Insertion order is FTS order, then any
    vector-only ids in vector order; callers sort stably on top of it.
    """
    fused: Dict[int, FusedScore] = {}
    for rank, mid in enumerate(fts_ids):
        entry = fused.setdefault(mid, FusedScore())
        if not entry.in_fts:
            entry.score += rrf_contribution(rank, fts_weight, k)
            entry.in_fts = True
    for rank, mid in enumerate(vector_ids):
        entry = fused.setdefault(mid, FusedScore())
        if not entry.in_vector:
            entry.score += rrf_contribution(rank, vector_weight, k)
            entry.in_vector = True
    return fused


# ------------------------------------------------------------------
# Retrieval engine
# ------------------------------------------------------------------

class MemoryRetrieval:
    """
    Usage::

        retrieval = MemoryRetrieval(storage, vectors, embedder, config.retrieval)
        results = retrieval.search(SearchOptions(query="auth flow", limit=5))
    """

    def __init__(
        self,
        storage: Any,
        vectors: Any,
        embedder: Any,
        config: Optional[RetrievalConfig] = None,
    ):
        self.storage = storage
        self.vectors = vectors
        self.embedder = embedder
        self.cfg = config or RetrievalConfig()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="engram-vector",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Search ───────────────────────────────────────────────

    def search(self, options: SearchOptions) -> List[SearchResult]:
        limit = int(options.limit)
        if limit <= 0 or not (options.query or "").strip():
            return []
        weight = options.hybrid_weight or HybridWeight(
            fts=self.cfg.fts_weight, vector=self.cfg.vector_weight,
        )
        filters = options.filters()
        fetch = limit * OVERFETCH

        future = None
        if self._vector_enabled():
            future = self._executor.submit(self._vector_branch, options.query, fetch)

        fts_results = self.storage.search_fts(options.query, fetch, filters)

        query_vec: Optional[np.ndarray] = None
        hits: List[VectorHit] = []
        if future is not None:
            try:
                query_vec, hits = future.result(timeout=self.cfg.vector_timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                logger.debug("Vector branch timed out after %.2fs, using FTS only",
                             self.cfg.vector_timeout)
            except TransientSearchError as e:
                logger.debug("Vector branch failed, using FTS only: %s", e)

        merged = self._merge(fts_results, hits, filters, weight, limit)

        if self.cfg.reranking and merged and query_vec is not None:
            merged = self._rerank(merged, query_vec)
        return merged

    def search_fts_only(self, options: SearchOptions) -> List[SearchResult]:
        """Keyword path alone, scored and tagged exactly as ``search`` would."""
        limit = int(options.limit)
        if limit <= 0 or not (options.query or "").strip():
            return []
        weight = options.hybrid_weight or HybridWeight(
            fts=self.cfg.fts_weight, vector=self.cfg.vector_weight,
        )
        filters = options.filters()
        fts_results = self.storage.search_fts(options.query, limit * OVERFETCH, filters)
        return self._merge(fts_results, [], filters, weight, limit)

    def _vector_enabled(self) -> bool:
        return (
            self.cfg.vector_enabled
            and self.embedder is not None
            and self.vectors is not None
            and self.vectors.is_available()
        )

    def _vector_branch(self, query: str, k: int) -> Tuple[np.ndarray, List[VectorHit]]:
        try:
            query_vec = self.embedder.generate(query)
            return query_vec, self.vectors.search_similar(query_vec, k)
        except Exception as e:
            raise TransientSearchError(f"vector search failed: {e}") from e

    def _merge(
        self,
        fts_results: List[SearchResult],
        hits: List[VectorHit],
        filters: SearchFilters,
        weight: HybridWeight,
        limit: int,
    ) -> List[SearchResult]:
        by_id: Dict[int, SearchResult] = {r.memory.id: r for r in fts_results}

        # Vector-only ids need their record; everything goes through the filters.
        missing = [h.memory_id for h in hits if h.memory_id not in by_id]
        looked_up: Dict[int, Memory] = self.storage.get_many(missing) if missing else {}
        vector_ids: List[int] = []
        for hit in hits:
            mid = hit.memory_id
            if mid in by_id:
                vector_ids.append(mid)
                continue
            memory = looked_up.get(mid)
            if memory is not None and filters.matches(memory):
                vector_ids.append(mid)

        fused = reciprocal_rank_fusion(
            [r.memory.id for r in fts_results], vector_ids,
            weight.fts, weight.vector, self.cfg.rrf_k,
        )

        results: List[SearchResult] = []
        for mid, f in fused.items():
            src = by_id.get(mid)
            memory = src.memory if src is not None else looked_up[mid]
            results.append(SearchResult(
                memory=memory,
                score=f.score,
                match_type=f.match_type,
                highlighted=src.highlighted if src is not None else None,
            ))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    def _rerank(self, results: List[SearchResult], query_vec: np.ndarray) -> List[SearchResult]:
        try:
            stored = self.vectors.get_embeddings([r.memory.id for r in results])
            rescored = []
            for r in results:
                emb = stored.get(r.memory.id)
                semantic = cosine_similarity(query_vec, emb) if emb is not None else 0.0
                rescored.append(replace(
                    r, score=RERANK_FUSED_WEIGHT * r.score + RERANK_SEMANTIC_WEIGHT * semantic,
                ))
        except Exception as e:
            logger.debug("Re-rank failed, keeping fused order: %s", e)
            return results
        rescored.sort(key=lambda r: r.score, reverse=True)
        return rescored

    # ── Passthrough ──────────────────────────────────────────

    def get_recent(self, limit: int = 10, types: Optional[Sequence[str]] = None) -> List[Memory]:
        return self.storage.get_recent(limit, types)

    def get_by_concepts(self, concepts: Sequence[str], limit: int = 10) -> List[Memory]:
        return self.storage.get_by_concepts(concepts, limit)

    def get_by_phase(self, phase: str, limit: int = 10) -> List[Memory]:
        return self.storage.get_by_phase(phase, limit)

    def get_by_session(self, session_id: str) -> List[Memory]:
        return self.storage.get_by_session(session_id)
