"""
Vector index with brute-force cosine search.

Embeddings live next to the records, in the ``memory_vectors`` table of
the same SQLite database, as raw ``float32`` blobs keyed by memory id.
Search loads the matrix and scores every row with numpy, which is
plenty for the few thousand records a single deployment accumulates.

* ``distance = 1 - cosine``; results are sorted ascending.
* Every vector must have exactly ``dimensions`` components.  A wrong
  length on write or query raises ``DimensionMismatchError``.  Nothing
  is ever padded or truncated.
* The dimension is recorded in ``vector_meta`` on first use.  Opening
  the database later with a different dimension is a startup error.
* If the table cannot be created (or the index is disabled), the store
  reports ``is_available() == False`` and every operation is a no-op
  returning an empty result.
* Deleting a record deletes its vector (``memories_vec_ad`` trigger).
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .embeddings import as_vector
from .errors import DimensionMismatchError
from .types import VectorHit

if TYPE_CHECKING:
    from .sqlite_store import MemoryStorage

logger = logging.getLogger(__name__)

_DDL = """
CREATE TABLE IF NOT EXISTS memory_vectors (
    memory_id  INTEGER PRIMARY KEY,
    embedding  BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS vector_meta (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS memories_vec_ad AFTER DELETE ON memories BEGIN
    DELETE FROM memory_vectors WHERE memory_id = old.id;
END;
"""


class VectorStore:
    """
    Usage::

        vectors = VectorStore(storage, dimensions=384)
        vectors.store_embedding(memory.id, vec)
        hits = vectors.search_similar(query_vec, k=10)
    """

    def __init__(self, storage: "MemoryStorage", dimensions: int = 384, enabled: bool = True):
        self._storage = storage
        self._conn = storage.connection
        self._lock = storage.lock
        self.dimensions = dimensions
        self._available = False
        if enabled:
            self._initialize()
        else:
            logger.info("Vector index disabled by configuration")

    def _initialize(self) -> None:
        try:
            with self._lock:
                self._conn.executescript(_DDL)
                stored = self._conn.execute(
                    "SELECT value FROM vector_meta WHERE key = 'dimensions'"
                ).fetchone()
                if stored is None:
                    self._conn.execute(
                        "INSERT INTO vector_meta (key, value) VALUES ('dimensions', ?)",
                        (str(self.dimensions),),
                    )
        except sqlite3.Error as e:
            logger.warning("Vector index unavailable, search will use FTS only: %s", e)
            return

        if stored is not None and int(stored[0]) != self.dimensions:
            raise DimensionMismatchError(self.dimensions, int(stored[0]), what="Stored vector index")
        self._available = True

    def is_available(self) -> bool:
        return self._available

    # ------------------------------------------------------------------

    def _check(self, vec: Any, what: str) -> np.ndarray:
        v = as_vector(vec)
        if v.shape[0] != self.dimensions:
            raise DimensionMismatchError(self.dimensions, v.shape[0], what=what)
        return v

    def _upsert(self, memory_id: int, vec: np.ndarray) -> bool:
        exists = self._conn.execute(
            "SELECT 1 FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if exists is None:
            return False
        self._conn.execute("DELETE FROM memory_vectors WHERE memory_id = ?", (memory_id,))
        self._conn.execute(
            "INSERT INTO memory_vectors (memory_id, embedding) VALUES (?, ?)",
            (memory_id, vec.tobytes()),
        )
        return True

    # ── Writes ───────────────────────────────────────────────

    def store_embedding(self, memory_id: int, embedding: Any) -> bool:
        """
        Upsert the vector for *memory_id*.

        Returns ``False`` when the index is unavailable or the record no
        longer exists.
        """
        if not self._available:
            return False
        vec = self._check(embedding, "Embedding")
        with self._storage.transaction():
            return self._upsert(memory_id, vec)

    def store_batch(self, items: Sequence[Tuple[int, Any]]) -> int:
        """Upsert many ``(memory_id, vector)`` pairs in one transaction."""
        if not self._available or not items:
            return 0
        checked = [(mid, self._check(vec, "Embedding")) for mid, vec in items]
        stored = 0
        with self._storage.transaction():
            for mid, vec in checked:
                stored += self._upsert(mid, vec)
        return stored

    def delete_embedding(self, memory_id: int) -> bool:
        if not self._available:
            return False
        with self._storage.transaction() as conn:
            cur = conn.execute("DELETE FROM memory_vectors WHERE memory_id = ?", (memory_id,))
            return cur.rowcount > 0

    def clean_orphans(self) -> int:
        """Drop vectors whose record is gone."""
        if not self._available:
            return 0
        with self._storage.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM memory_vectors WHERE memory_id NOT IN (SELECT id FROM memories)"
            )
            return cur.rowcount

    # ── Reads ────────────────────────────────────────────────

    def get_embedding(self, memory_id: int) -> Optional[np.ndarray]:
        if not self._available:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT embedding FROM memory_vectors WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        if row is None:
            return None
        return np.frombuffer(row[0], dtype=np.float32).copy()

    def get_embeddings(self, ids: Sequence[int]) -> Dict[int, np.ndarray]:
        if not self._available or not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT memory_id, embedding FROM memory_vectors WHERE memory_id IN ({marks})",
                list(ids),
            ).fetchall()
        return {r[0]: np.frombuffer(r[1], dtype=np.float32).copy() for r in rows}

    def has_embedding(self, memory_id: int) -> bool:
        if not self._available:
            return False
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM memory_vectors WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        return row is not None

    def count(self) -> int:
        if not self._available:
            return 0
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM memory_vectors").fetchone()[0])

    def find_missing_embeddings(self, limit: int = 100) -> List[int]:
        """Ids of records that have no vector yet, oldest first."""
        if not self._available:
            return []
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT m.id FROM memories m
                LEFT JOIN memory_vectors v ON m.id = v.memory_id
                WHERE v.memory_id IS NULL
                ORDER BY m.id
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        return [r[0] for r in rows]

    # ── Search ───────────────────────────────────────────────

    def search_similar(self, query: Any, k: int = 10) -> List[VectorHit]:
        """
        The *k* nearest vectors to *query* by cosine distance, ascending.

        Zero-norm rows (and a zero-norm query) score cosine 0, distance 1.
        """
        if not self._available or k <= 0:
            return []
        q = self._check(query, "Query embedding")

        with self._lock:
            rows = self._conn.execute(
                "SELECT memory_id, embedding FROM memory_vectors ORDER BY memory_id"
            ).fetchall()
        if not rows:
            return []

        ids = np.fromiter((r[0] for r in rows), dtype=np.int64, count=len(rows))
        matrix = np.vstack([np.frombuffer(r[1], dtype=np.float32) for r in rows])
        if matrix.shape[1] != self.dimensions:
            raise DimensionMismatchError(self.dimensions, matrix.shape[1], what="Stored vector")

        q64 = q.astype(np.float64)
        m64 = matrix.astype(np.float64)
        q_norm = np.linalg.norm(q64)
        row_norms = np.linalg.norm(m64, axis=1)
        denom = row_norms * q_norm
        dots = m64 @ q64
        cos = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
        distances = 1.0 - cos

        # Stable sort keeps ascending memory_id among equal distances.
        order = np.argsort(distances, kind="stable")[:k]
        return [VectorHit(memory_id=int(ids[i]), distance=float(distances[i])) for i in order]
