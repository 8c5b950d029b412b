"""
Persistent memory: capture, distillation, hybrid retrieval and context
building over a single SQLite database.
"""

from .errors import MemorySystemError, ConfigurationError, DimensionMismatchError, TransientSearchError
from .types import (
    Memory,
    MemoryInput,
    MemoryUpdate,
    SearchResult,
    SearchOptions,
    SearchFilters,
    HybridWeight,
    VectorHit,
    RawEvent,
    ToolUseEvent,
    PhaseChangeEvent,
    UserMessageEvent,
    AssistantMessageEvent,
    raw_event_from_dict,
    MEMORY_TYPES,
)
from .settings import (
    MemoryConfig,
    CaptureConfig,
    InjectionConfig,
    EmbeddingsConfig,
    RetrievalConfig,
    parse_memory_config,
    validate_memory_config,
)
from .capture import should_capture, estimate_importance, get_memory_type_for_event
from .distiller import MemoryDistiller, DistillationResult
from .embeddings import EmbeddingGenerator, HashingEmbedder, cosine_similarity, combine_for_embedding
from .sqlite_store import MemoryStorage
from .vector_store import VectorStore
from .retrieval import MemoryRetrieval, reciprocal_rank_fusion
from .context_builder import MemoryContextBuilder, estimate_tokens
from .manager import MemoryManager
