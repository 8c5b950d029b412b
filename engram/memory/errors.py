"""Exceptions raised by the memory subsystem."""

from __future__ import annotations


class MemorySystemError(RuntimeError):
    """Base class for memory subsystem failures."""


class ConfigurationError(MemorySystemError):
    """Fatal misconfiguration detected at startup.  Never recovered."""


class DimensionMismatchError(ConfigurationError, ValueError):
    """A vector's length differs from the deployment-wide dimension."""

    def __init__(self, expected: int, got: int, what: str = "Embedding"):
        super().__init__(
            f"{what} dimension mismatch: expected {expected}, got {got}"
        )
        self.expected = expected
        self.got = got


class TransientSearchError(MemorySystemError):
    """Vector/embedding backend failed mid-query.  Retrieval degrades to FTS."""
