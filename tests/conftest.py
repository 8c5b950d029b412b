"""
Shared pytest fixtures.

A session-scoped QCoreApplication is required for any test that creates
a PyQt6 object (EventBus, or a MemoryManager wired to one).  We use
QCoreApplication (not QApplication) and force the offscreen platform so
the tests run headlessly on CI / servers without a display.

Memory fixtures use a file database under ``tmp_path``, a controllable
clock and deterministic embedders; nothing touches the network.
"""

from __future__ import annotations

import os
import sys
from typing import Dict, List, Sequence

import numpy as np
import pytest

# Force Qt to run without a display before any Qt import happens.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

DIMS = 8


@pytest.fixture(scope="session")
def qapp():
    """One QCoreApplication for the entire test session."""
    from PyQt6.QtCore import QCoreApplication

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    yield app


@pytest.fixture
def bus(qapp):
    """Fresh EventBus for each test."""
    from engram.events import EventBus

    return EventBus()


# ── Clock ─────────────────────────────────────────────────────────────

class FakeClock:
    """Manually advanced clock; starts at a fixed epoch."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ── Embedders ─────────────────────────────────────────────────────────

class StubEmbedder:
    """
    Maps a text to a fixed vector by keyword.

    The first registered keyword found in the text (case-insensitive)
    decides the vector; anything else gets ``default``.
    """

    provider_name = "stub"

    def __init__(self, dimensions: int = DIMS):
        self.dimensions = dimensions
        self.table: Dict[str, np.ndarray] = {}
        self.default = np.zeros(dimensions, dtype=np.float32)
        self.default[-1] = 1.0
        self.calls: List[str] = []

    def axis(self, keyword: str, index: int) -> None:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        vec[index] = 1.0
        self.table[keyword.lower()] = vec

    def generate(self, text: str) -> np.ndarray:
        self.calls.append(text)
        lowered = text.lower()
        for keyword, vec in self.table.items():
            if keyword in lowered:
                return vec.copy()
        return self.default.copy()

    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [self.generate(t) for t in texts]


class ThrowingEmbedder(StubEmbedder):
    provider_name = "broken"

    def generate(self, text: str) -> np.ndarray:
        raise RuntimeError("embedding backend offline")


@pytest.fixture
def embedder():
    return StubEmbedder()


@pytest.fixture
def broken_embedder():
    return ThrowingEmbedder()


# ── Storage ───────────────────────────────────────────────────────────

@pytest.fixture
def storage(tmp_path, clock):
    from engram.memory.sqlite_store import MemoryStorage

    store = MemoryStorage(tmp_path / "memory.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def vectors(storage):
    from engram.memory.vector_store import VectorStore

    return VectorStore(storage, dimensions=DIMS)
