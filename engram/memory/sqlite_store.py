"""
SQLite-backed record store with FTS5 keyword search.

One connection per store, shared with ``VectorStore`` and serialised by
a re-entrant lock, so the store is safe to call from the host thread,
the retrieval fan-out worker and the background embedding worker at the
same time.  Multi-row writes run inside ``transaction()`` (``BEGIN
IMMEDIATE`` … ``COMMIT``, rollback on error), so a crash mid-sweep
leaves the table and its FTS index consistent.

Retention
---------
* ``delete_older_than(days)`` — drops rows created before the cutoff.
* ``trim_to_max(n)`` — drops rows in the fixed order
  ``importance ASC, created_at ASC, id ASC`` until at most *n* remain.

Both delete in batches of ``DELETE_BATCH`` ids, one transaction per
batch, so readers are never blocked for the length of a full sweep.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from . import schema
from .types import (
    MATCH_FTS,
    TITLE_MAX_CHARS,
    VISIBILITY_PUBLIC,
    Memory,
    MemoryInput,
    MemoryUpdate,
    SearchFilters,
    SearchResult,
    canonical_importance,
    normalize_memory_type,
    normalize_visibility,
)

logger = logging.getLogger(__name__)

DELETE_BATCH = 500
SECONDS_PER_DAY = 86400.0

_FTS_STRIP = str.maketrans({c: " " for c in '*"():^{}[]'})


def _dump_list(values: Optional[Iterable[str]]) -> str:
    return json.dumps([str(v) for v in (values or [])], ensure_ascii=False)


def _load_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def _row_to_memory(row: sqlite3.Row) -> Memory:
    return Memory(
        id=row["id"],
        type=row["type"],
        title=row["title"],
        content=row["content"],
        facts=_load_list(row["facts"]),
        concepts=_load_list(row["concepts"]),
        source_files=_load_list(row["source_files"]),
        importance=float(row["importance"]),
        visibility=row["visibility"],
        phase=row["phase"],
        session_id=row["session_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        accessed_at=row["accessed_at"],
        access_count=row["access_count"],
    )


def build_fts_query(text: str) -> str:
    """
    Turn free text into an FTS5 prefix query: ``"w1"* OR "w2"*``.

    Syntax characters are stripped, so user input can never produce a
    malformed MATCH expression.
    """
    words = [w for w in (text or "").translate(_FTS_STRIP).split() if w]
    return " OR ".join(f'"{w}"*' for w in words)


def _filter_sql(filters: Optional[SearchFilters], alias: str = "") -> Tuple[List[str], List[Any]]:
    p = f"{alias}." if alias else ""
    clauses: List[str] = []
    params: List[Any] = []
    if filters is None:
        filters = SearchFilters()
    if filters.types:
        clauses.append(f"{p}type IN ({', '.join('?' for _ in filters.types)})")
        params.extend(filters.types)
    if filters.min_importance is not None:
        clauses.append(f"{p}importance >= ?")
        params.append(float(filters.min_importance))
    if not filters.include_private:
        clauses.append(f"{p}visibility = ?")
        params.append(VISIBILITY_PUBLIC)
    if filters.phase is not None:
        clauses.append(f"{p}phase = ?")
        params.append(filters.phase)
    if filters.concepts:
        clauses.append(
            "(" + " OR ".join(f"{p}concepts LIKE ?" for _ in filters.concepts) + ")"
        )
        params.extend(f'%{json.dumps(c, ensure_ascii=False)}%' for c in filters.concepts)
    return clauses, params


class MemoryStorage:
    """
    Usage::

        storage = MemoryStorage("memory_data/engram.db")
        m = storage.insert(MemoryInput(type="note", title="t", content="c"))
        storage.search_fts("c", limit=5)
    """

    def __init__(self, db_path: Path | str = ":memory:", clock: Callable[[], float] = time.time):
        self._path = str(db_path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            self._path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            schema.bootstrap(self._conn)
        self._closed = False
        logger.info("Memory store opened: %s (schema v%d)", self._path, self.schema_version)

    # ── Connection sharing ───────────────────────────────────

    @property
    def path(self) -> str:
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def schema_version(self) -> int:
        with self._lock:
            return schema.get_schema_version(self._conn)

    def now(self) -> float:
        return self._clock()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` … ``COMMIT``; rollback and re-raise on error."""
        with self._lock:
            if self._conn.in_transaction:
                # Nested use joins the outer transaction.
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    # ── Create ───────────────────────────────────────────────

    def _insert_row(self, conn: sqlite3.Connection, item: MemoryInput, now: float) -> int:
        cur = conn.execute(
            """
            INSERT INTO memories (
                type, title, content, facts, concepts, source_files,
                importance, visibility, phase, session_id,
                created_at, updated_at, accessed_at, access_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                normalize_memory_type(item.type),
                (item.title or "")[:TITLE_MAX_CHARS],
                item.content or "",
                _dump_list(item.facts),
                _dump_list(item.concepts),
                _dump_list(item.source_files),
                canonical_importance(item.importance),
                normalize_visibility(item.visibility),
                item.phase,
                item.session_id,
                now, now, now,
            ),
        )
        return int(cur.lastrowid)

    def insert(self, item: MemoryInput) -> Memory:
        """Persist *item*.  Assigns the id and sets all timestamps to now."""
        with self.transaction() as conn:
            new_id = self._insert_row(conn, item, self._clock())
            return self._fetch(new_id)

    def insert_batch(self, items: Sequence[MemoryInput]) -> List[Memory]:
        """All-or-nothing insert; every row gets the same timestamp."""
        if not items:
            return []
        with self.transaction() as conn:
            now = self._clock()
            ids = [self._insert_row(conn, item, now) for item in items]
            return [self._fetch(i) for i in ids]

    # ── Read ─────────────────────────────────────────────────

    def _fetch(self, memory_id: int) -> Memory:
        row = self._conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return _row_to_memory(row)

    def get_by_id(self, memory_id: int, *, touch: bool = False) -> Optional[Memory]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
            if row is None:
                return None
            if touch:
                self.touch([memory_id])
                row = self._conn.execute(
                    "SELECT * FROM memories WHERE id = ?", (memory_id,)
                ).fetchone()
            return _row_to_memory(row)

    def get_many(self, ids: Sequence[int]) -> Dict[int, Memory]:
        """Point lookups by id; missing ids are simply absent."""
        if not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM memories WHERE id IN ({marks})", list(ids)
            ).fetchall()
        return {row["id"]: _row_to_memory(row) for row in rows}

    def search_fts(
        self,
        text: str,
        limit: int = 10,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        """BM25-ranked keyword search.  Title hits weigh most."""
        query = build_fts_query(text)
        if not query or limit <= 0:
            return []

        clauses, params = _filter_sql(filters, alias="m")
        where = "".join(f" AND {c}" for c in clauses)
        sql = f"""
            SELECT
                m.*,
                bm25(memories_fts, 10.0, 5.0, 1.0, 1.0) AS rank,
                highlight(memories_fts, 0, '<mark>', '</mark>') AS hl_title,
                highlight(memories_fts, 1, '<mark>', '</mark>') AS hl_content
            FROM memories m
            JOIN memories_fts ON m.id = memories_fts.rowid
            WHERE memories_fts MATCH ?{where}
            ORDER BY rank, m.id
            LIMIT ?
        """
        with self._lock:
            try:
                rows = self._conn.execute(sql, [query, *params, limit]).fetchall()
            except sqlite3.OperationalError as e:
                logger.warning("FTS query failed (%d chars): %s", len(text), e)
                return []

        results = []
        for row in rows:
            hl = row["hl_content"] if "<mark>" in (row["hl_content"] or "") else row["hl_title"]
            results.append(SearchResult(
                memory=_row_to_memory(row),
                score=abs(float(row["rank"])),
                match_type=MATCH_FTS,
                highlighted=hl,
            ))
        return results

    def _select(self, where: List[str], params: List[Any], order: str,
                limit: Optional[int] = None) -> List[Memory]:
        sql = "SELECT * FROM memories"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, int(limit)]
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_memory(r) for r in rows]

    def get_recent(
        self,
        limit: int = 10,
        types: Optional[Sequence[str]] = None,
        include_private: bool = False,
    ) -> List[Memory]:
        where, params = _filter_sql(SearchFilters(types=types, include_private=include_private))
        return self._select(where, params, "created_at DESC, id DESC", limit)

    def get_by_concepts(self, concepts: Sequence[str], limit: int = 10) -> List[Memory]:
        if not concepts:
            return []
        where, params = _filter_sql(SearchFilters(concepts=concepts))
        return self._select(where, params, "importance DESC, created_at DESC, id DESC", limit)

    def get_by_phase(self, phase: str, limit: int = 10) -> List[Memory]:
        where, params = _filter_sql(SearchFilters(phase=phase))
        return self._select(where, params, "created_at DESC, id DESC", limit)

    def get_by_session(self, session_id: str) -> List[Memory]:
        return self._select(["session_id = ?"], [session_id], "created_at ASC, id ASC")

    def count(self, types: Optional[Sequence[str]] = None, include_private: bool = False) -> int:
        where, params = _filter_sql(SearchFilters(types=types, include_private=include_private))
        sql = "SELECT COUNT(*) FROM memories"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self._lock:
            return int(self._conn.execute(sql, params).fetchone()[0])

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return schema.get_stats(self._conn)

    # ── Update / delete ──────────────────────────────────────

    def update(self, memory_id: int, changes: MemoryUpdate) -> Optional[Memory]:
        sets: List[str] = []
        params: List[Any] = []
        if changes.title is not None:
            sets.append("title = ?")
            params.append(changes.title[:TITLE_MAX_CHARS])
        if changes.content is not None:
            sets.append("content = ?")
            params.append(changes.content)
        if changes.facts is not None:
            sets.append("facts = ?")
            params.append(_dump_list(changes.facts))
        if changes.concepts is not None:
            sets.append("concepts = ?")
            params.append(_dump_list(changes.concepts))
        if changes.source_files is not None:
            sets.append("source_files = ?")
            params.append(_dump_list(changes.source_files))
        if changes.importance is not None:
            sets.append("importance = ?")
            params.append(canonical_importance(changes.importance))
        if changes.visibility is not None:
            sets.append("visibility = ?")
            params.append(normalize_visibility(changes.visibility))

        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM memories WHERE id = ?", (memory_id,)).fetchone() is None:
                return None
            sets.append("updated_at = ?")
            params.append(self._clock())
            conn.execute(
                f"UPDATE memories SET {', '.join(sets)} WHERE id = ?", [*params, memory_id]
            )
            return self._fetch(memory_id)

    def delete(self, memory_id: int) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cur.rowcount > 0

    def touch(self, ids: Iterable[int]) -> None:
        """Record an access: bump ``access_count`` and ``accessed_at``."""
        ids = list(ids)
        if not ids:
            return
        now = self._clock()
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE memories SET accessed_at = ?, access_count = access_count + 1 WHERE id = ?",
                [(now, i) for i in ids],
            )

    # ── Retention ────────────────────────────────────────────

    def _delete_ids(self, ids: Sequence[int]) -> int:
        deleted = 0
        for start in range(0, len(ids), DELETE_BATCH):
            batch = ids[start:start + DELETE_BATCH]
            marks = ", ".join("?" for _ in batch)
            with self.transaction() as conn:
                cur = conn.execute(f"DELETE FROM memories WHERE id IN ({marks})", list(batch))
                deleted += cur.rowcount
        return deleted

    def delete_older_than(self, days: float) -> int:
        cutoff = self._clock() - float(days) * SECONDS_PER_DAY
        with self._lock:
            ids = [r[0] for r in self._conn.execute(
                "SELECT id FROM memories WHERE created_at < ? ORDER BY id", (cutoff,)
            )]
        deleted = self._delete_ids(ids)
        if deleted:
            logger.info("Retention sweep removed %d memories older than %s days", deleted, days)
        return deleted

    def trim_to_max(self, max_count: int) -> int:
        max_count = max(0, int(max_count))
        with self._lock:
            total = int(self._conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0])
            excess = total - max_count
            if excess <= 0:
                return 0
            ids = [r[0] for r in self._conn.execute(
                "SELECT id FROM memories ORDER BY importance ASC, created_at ASC, id ASC LIMIT ?",
                (excess,),
            )]
        deleted = self._delete_ids(ids)
        if deleted:
            logger.info("Trimmed %d memories (ceiling %d)", deleted, max_count)
        return deleted

    # ── Index upkeep ─────────────────────────────────────────

    def optimize_fts(self) -> None:
        with self._lock:
            schema.optimize_fts(self._conn)

    def rebuild_fts(self) -> None:
        with self._lock:
            schema.rebuild_fts(self._conn)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()

    @property
    def closed(self) -> bool:
        return self._closed
