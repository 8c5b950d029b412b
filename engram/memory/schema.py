"""
SQLite schema for the memory store.

Layout
------
* ``memories``      — one row per record.  List fields are JSON text.
  ``importance`` is REAL on the canonical 0–1 scale; timestamps are
  epoch seconds (REAL).
* ``memories_fts``  — FTS5 external-content index over title, content,
  facts, concepts.  Kept in sync by the ``memories_ai/ad/au`` triggers.
* ``schema_version`` — applied schema versions.

The vector table is owned by ``vector_store.py`` and created there, so
a database without it still opens as a plain FTS store.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA busy_timeout = 5000",
    "PRAGMA foreign_keys = ON",
)

_TABLES = """
CREATE TABLE IF NOT EXISTS memories (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    type          TEXT NOT NULL DEFAULT 'observation',
    title         TEXT NOT NULL,
    content       TEXT NOT NULL,
    facts         TEXT NOT NULL DEFAULT '[]',
    concepts      TEXT NOT NULL DEFAULT '[]',
    source_files  TEXT NOT NULL DEFAULT '[]',
    importance    REAL NOT NULL DEFAULT 0.5 CHECK (importance >= 0 AND importance <= 1),
    visibility    TEXT NOT NULL DEFAULT 'public',
    phase         TEXT,
    session_id    TEXT,
    created_at    REAL NOT NULL,
    updated_at    REAL NOT NULL,
    accessed_at   REAL NOT NULL,
    access_count  INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(importance);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_phase ON memories(phase);
CREATE INDEX IF NOT EXISTS idx_memories_visibility ON memories(visibility);
CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    applied_at  REAL NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS REAL))
);
"""

_FTS = """
CREATE VIRTUAL TABLE memories_fts USING fts5(
    title,
    content,
    facts,
    concepts,
    content='memories',
    content_rowid='id',
    tokenize='porter unicode61 remove_diacritics 2',
    prefix='2 3'
);
INSERT INTO memories_fts(rowid, title, content, facts, concepts)
    SELECT id, title, content, facts, concepts FROM memories;
"""

_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, title, content, facts, concepts)
    VALUES (new.id, new.title, new.content, new.facts, new.concepts);
END;

CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, title, content, facts, concepts)
    VALUES ('delete', old.id, old.title, old.content, old.facts, old.concepts);
END;

CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF title, content, facts, concepts ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, title, content, facts, concepts)
    VALUES ('delete', old.id, old.title, old.content, old.facts, old.concepts);
    INSERT INTO memories_fts(rowid, title, content, facts, concepts)
    VALUES (new.id, new.title, new.content, new.facts, new.concepts);
END;
"""


def _exists(conn: sqlite3.Connection, kind: str, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = ? AND name = ?", (kind, name)
    ).fetchone()
    return row is not None


def apply_pragmas(conn: sqlite3.Connection) -> None:
    for pragma in _PRAGMAS:
        conn.execute(pragma)


def bootstrap(conn: sqlite3.Connection) -> None:
    """Create tables, FTS index and triggers if missing.  Idempotent."""
    apply_pragmas(conn)
    conn.executescript(_TABLES)
    if not _exists(conn, "table", "memories_fts"):
        conn.executescript(_FTS)
        logger.info("Created FTS index")
    conn.executescript(_TRIGGERS)
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
    )
    migrate(conn)


def get_schema_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return int(row[0]) if row and row[0] is not None else 0


def migrate(conn: sqlite3.Connection) -> None:
    current = get_schema_version(conn)
    if current < SCHEMA_VERSION:
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        logger.info("Migrated memory schema v%d -> v%d", current, SCHEMA_VERSION)


def optimize_fts(conn: sqlite3.Connection) -> None:
    conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('optimize')")


def rebuild_fts(conn: sqlite3.Connection) -> None:
    conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('rebuild')")


def get_stats(conn: sqlite3.Connection) -> Dict[str, Any]:
    total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
    by_type = {r[0]: r[1] for r in conn.execute(
        "SELECT type, COUNT(*) FROM memories GROUP BY type"
    )}
    by_visibility = {r[0]: r[1] for r in conn.execute(
        "SELECT visibility, COUNT(*) FROM memories GROUP BY visibility"
    )}
    oldest, newest = conn.execute(
        "SELECT MIN(created_at), MAX(created_at) FROM memories"
    ).fetchone()
    return {
        "total": total,
        "by_type": by_type,
        "by_visibility": by_visibility,
        "oldest": oldest,
        "newest": newest,
    }
