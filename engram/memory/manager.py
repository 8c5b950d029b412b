"""
Memory manager — the in-process entry point for the memory subsystem.

This is what the host talks to.  It:

1. Owns the storage, vector index, embedder, retrieval engine, distiller
   and context builder, all configured from one ``MemoryConfig``.
2. Listens for raw host events (``memory_event`` on the bus), distills
   them and saves what passes the capture filter.
3. Sanitizes everything on the way in (``save`` / ``update``), so no
   caller can bypass the privacy rules.
4. Embeds saved records on a background thread.  A record is
   keyword-searchable as soon as ``save`` returns and vector-searchable
   once the worker has stored its embedding; ``wait_for_embeddings``
   blocks until the queue drains.
5. Publishes ``memory_saved`` and ``memory_updated`` so the host can
   react.

Only startup configuration problems raise (``ConfigurationError``).
Failures while handling bus events are logged and dropped so the host
loop never sees them.
"""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from ..events import MEMORY_EVENT, MEMORY_SAVED, MEMORY_UPDATED
from ..safety.privacy import PrivacyManager
from .context_builder import MemoryContextBuilder
from .distiller import REASON_UNKNOWN, DistillationResult, MemoryDistiller
from .embeddings import EmbeddingGenerator, combine_for_embedding
from .errors import DimensionMismatchError
from .retrieval import MemoryRetrieval
from .settings import MemoryConfig
from .sqlite_store import MemoryStorage
from .types import Memory, MemoryInput, MemoryUpdate, SearchOptions, SearchResult, raw_event_from_dict
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

WORKER_JOIN_TIMEOUT = 5.0


class MemoryManager:
    """
    Usage::

        manager = MemoryManager(MemoryConfig.from_store(config), event_bus=bus)
        manager.save(MemoryInput(type="decision", title="Use SQLite", content="..."))
        system_prompt += manager.build_context("storage layer")
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        *,
        db_path: Optional[str] = None,
        embedder: Any = None,
        event_bus: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = config or MemoryConfig()
        self.bus = event_bus
        self.privacy = PrivacyManager(self.cfg.privacy)
        self.distiller = MemoryDistiller(self.cfg.capture, self.privacy)
        self.storage = MemoryStorage(db_path or self.cfg.db_path, clock=clock)

        try:
            self.embedder = embedder if embedder is not None else EmbeddingGenerator(self.cfg.embeddings)
            dims = self.cfg.embeddings.dimensions
            declared = getattr(self.embedder, "dimensions", dims)
            if declared != dims:
                raise DimensionMismatchError(dims, declared, what="Embedding provider")
            self.vectors = VectorStore(self.storage, dims, enabled=self.cfg.retrieval.vector_enabled)
        except Exception:
            self.storage.close()
            raise

        self.retrieval = MemoryRetrieval(self.storage, self.vectors, self.embedder, self.cfg.retrieval)
        self.context = MemoryContextBuilder(self, self.cfg.injection)

        self._queue: "queue.Queue[Optional[tuple[int, str]]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        if self.vectors.is_available():
            self._worker = threading.Thread(
                target=self._embedding_loop, name="engram-embedder", daemon=True,
            )
            self._worker.start()

        self._closed = False
        if self.bus is not None:
            self.bus.subscribe(MEMORY_EVENT, self._on_memory_event)

        logger.info(
            "Memory manager ready (db=%s, embeddings=%s/%d, vectors=%s)",
            self.storage.path, getattr(self.embedder, "provider_name", "custom"),
            self.cfg.embeddings.dimensions, self.vectors.is_available(),
        )

    # ── Write path ───────────────────────────────────────────

    def _sanitize_input(self, item: MemoryInput) -> MemoryInput:
        check = self.privacy.validate_for_storage(item.content)
        for warning in check.warnings:
            logger.warning("Memory save (%s): %s", item.type, warning)
        return dataclasses.replace(
            item,
            title=self.privacy.sanitize(item.title),
            content=check.sanitized_content,
            facts=[self.privacy.sanitize(f) for f in item.facts],
        )

    def save(self, item: MemoryInput) -> Memory:
        """Sanitize, persist and queue *item* for embedding.  Never rejects."""
        memory = self.storage.insert(self._sanitize_input(item))
        self._enqueue(memory)
        self._publish(MEMORY_SAVED, {"id": memory.id, "type": memory.type, "title": memory.title})
        return memory

    def save_batch(self, items: Sequence[MemoryInput]) -> List[Memory]:
        memories = self.storage.insert_batch([self._sanitize_input(i) for i in items])
        for memory in memories:
            self._enqueue(memory)
            self._publish(MEMORY_SAVED, {"id": memory.id, "type": memory.type, "title": memory.title})
        return memories

    def update(self, memory_id: int, changes: MemoryUpdate) -> Optional[Memory]:
        """Apply *changes*; ``None`` when the record does not exist."""
        if changes.is_empty():
            return self.storage.get_by_id(memory_id)
        sanitized = dataclasses.replace(
            changes,
            title=self.privacy.sanitize(changes.title) if changes.title is not None else None,
            content=(self.privacy.validate_for_storage(changes.content).sanitized_content
                     if changes.content is not None else None),
            facts=[self.privacy.sanitize(f) for f in changes.facts] if changes.facts is not None else None,
        )
        memory = self.storage.update(memory_id, sanitized)
        if memory is None:
            return None
        if any(v is not None for v in (changes.title, changes.content, changes.facts, changes.concepts)):
            self._enqueue(memory)
        return memory

    def delete(self, memory_id: int) -> bool:
        return self.storage.delete(memory_id)

    # ── Capture ──────────────────────────────────────────────

    def distill(self, event: Any) -> DistillationResult:
        """Run the capture filter and distiller without saving."""
        if isinstance(event, Mapping):
            event = raw_event_from_dict(event)
        if event is None:
            return DistillationResult(captured=False, reason=REASON_UNKNOWN)
        return self.distiller.distill(event)

    def capture(self, event: Any) -> Optional[Memory]:
        """Distill *event* and save the result.  Failures are logged, not raised."""
        if not self.cfg.enabled:
            return None
        try:
            result = self.distill(event)
            if not result.captured or result.memory is None:
                logger.debug("Event not captured: %s", result.reason)
                return None
            return self.save(result.memory)
        except Exception as e:
            logger.warning("Memory capture failed: %s", e)
            return None

    def _on_memory_event(self, data: Dict[str, Any]) -> None:
        self.capture(data.get("event"))

    # ── Read path ────────────────────────────────────────────

    def search(self, options: SearchOptions) -> List[SearchResult]:
        results = self.retrieval.search(options)
        if results:
            self.storage.touch(r.memory.id for r in results)
        return results

    def get_by_id(self, memory_id: int) -> Optional[Memory]:
        return self.storage.get_by_id(memory_id, touch=True)

    def get_recent(self, limit: int = 10, types: Optional[Sequence[str]] = None) -> List[Memory]:
        return self.retrieval.get_recent(limit, types)

    def get_by_concepts(self, concepts: Sequence[str], limit: int = 10) -> List[Memory]:
        return self.retrieval.get_by_concepts(concepts, limit)

    def get_by_phase(self, phase: str, limit: int = 10) -> List[Memory]:
        return self.retrieval.get_by_phase(phase, limit)

    def get_by_session(self, session_id: str) -> List[Memory]:
        return self.retrieval.get_by_session(session_id)

    # ── Context ──────────────────────────────────────────────

    def build_context(self, query: str) -> str:
        if not self.cfg.enabled:
            return ""
        return self.context.build_context(query)

    def build_recent_context(self, limit: int = 10) -> str:
        if not self.cfg.enabled:
            return ""
        return self.context.build_recent_context(limit)

    def build_phase_context(self, phase: str) -> str:
        if not self.cfg.enabled:
            return ""
        return self.context.build_phase_context(phase)

    # ── Embeddings ───────────────────────────────────────────

    @staticmethod
    def _embedding_text(memory: Memory) -> str:
        return combine_for_embedding(memory.title, memory.content, memory.facts, memory.concepts)

    def _enqueue(self, memory: Memory) -> None:
        if self._worker is not None:
            self._queue.put((memory.id, self._embedding_text(memory)))

    def _embedding_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                memory_id, text = item
                vec = self.embedder.generate(text)
                self.vectors.store_embedding(memory_id, vec)
            except DimensionMismatchError as e:
                logger.error("Embedding for memory %d rejected: %s", item[0], e)
            except Exception as e:
                logger.warning("Embedding failed for memory %d: %s", item[0], e)
            finally:
                self._queue.task_done()

    def wait_for_embeddings(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued embedding is stored.  ``False`` on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def backfill_embeddings(self, limit: int = 100) -> int:
        """Embed up to *limit* records that have no vector yet, synchronously."""
        ids = self.vectors.find_missing_embeddings(limit)
        if not ids:
            return 0
        memories = self.storage.get_many(ids)
        ordered = [memories[i] for i in ids if i in memories]
        try:
            vectors = self.embedder.generate_batch([self._embedding_text(m) for m in ordered])
            stored = self.vectors.store_batch([(m.id, v) for m, v in zip(ordered, vectors)])
        except Exception as e:
            logger.warning("Embedding backfill failed: %s", e)
            return 0
        logger.info("Backfilled %d embeddings", stored)
        return stored

    # ── Maintenance / status ─────────────────────────────────

    def run_maintenance(self) -> Dict[str, Dict[str, Any]]:
        """Retention sweep, size ceiling, orphaned vectors, FTS merge."""
        result = self.privacy.run_maintenance(self.storage)
        orphans = self.vectors.clean_orphans()
        result["orphans"] = {"deleted": orphans, "reason": "Removed vectors without a memory"}
        self.storage.optimize_fts()
        self._publish(MEMORY_UPDATED, {"stats": self.storage.stats()})
        return result

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.cfg.enabled,
            "db_path": self.storage.path,
            "schema_version": self.storage.schema_version,
            "stats": self.storage.stats(),
            "vectors": {
                "available": self.vectors.is_available(),
                "count": self.vectors.count(),
                "dimensions": self.vectors.dimensions,
            },
            "embedding_provider": getattr(self.embedder, "provider_name", "custom"),
            "pending_embeddings": self._queue.unfinished_tasks,
        }

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.bus is not None:
            self.bus.unsubscribe(MEMORY_EVENT, self._on_memory_event)
        if self._worker is not None:
            self._queue.put(None)
            self._worker.join(timeout=WORKER_JOIN_TIMEOUT)
        self.retrieval.close()
        self.storage.close()

    # ------------------------------------------------------------------

    def _publish(self, event: str, data: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.publish(event, data)
