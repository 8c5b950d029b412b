"""
Text embeddings for the vector index.

Providers
---------
* ``local``  — random indexing with character n-grams.  Deterministic,
  no model download, no network.  Words and sub-word n-grams are each
  mapped to a pseudo-random unit vector seeded from their SHA-256 hash;
  the weighted sum is L2-normalised.  Related words ("program",
  "programming") share n-gram components, so similarity degrades
  gracefully instead of being all-or-nothing.
* ``openai`` — ``POST {base_url}/embeddings`` (OpenAI-compatible).
* ``ollama`` — ``POST {base_url}/api/embed``.

The HTTP providers use only ``urllib``.  Every provider returns
``float32`` numpy vectors of one fixed length; ``EmbeddingGenerator``
rejects anything else with ``DimensionMismatchError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
import urllib.error
import urllib.request
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError, DimensionMismatchError
from .settings import PROVIDER_LOCAL, PROVIDER_OLLAMA, PROVIDER_OPENAI, EmbeddingsConfig

logger = logging.getLogger(__name__)

MAX_EMBED_CHARS = 8000

DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"


# ------------------------------------------------------------------
# Vector helpers
# ------------------------------------------------------------------

def as_vector(values: Any) -> np.ndarray:
    """Coerce a list / array into a flat float32 vector."""
    return np.asarray(values, dtype=np.float32).reshape(-1)


def cosine_similarity(a: Any, b: Any) -> float:
    """
    ``dot(a, b) / (|a| * |b|)``.  Zero when either norm is zero.

    Vectors of different lengths raise ``DimensionMismatchError``.
    """
    va = as_vector(a)
    vb = as_vector(b)
    if va.shape != vb.shape:
        raise DimensionMismatchError(va.shape[0], vb.shape[0], what="Cosine")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def combine_for_embedding(
    title: str,
    content: str,
    facts: Optional[Sequence[str]] = None,
    concepts: Optional[Sequence[str]] = None,
) -> str:
    """Flatten a record's searchable fields into one embedding input."""
    parts = [title, content]
    if facts:
        parts.append("Facts: " + "; ".join(facts))
    if concepts:
        parts.append("Tags: " + ", ".join(concepts))
    return "\n\n".join(parts)


# ------------------------------------------------------------------
# Tokenisation
# ------------------------------------------------------------------

_WORD_RE = re.compile(r"[a-z0-9']+")
_STOPWORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will",
    "would", "could", "should", "may", "might", "shall", "can",
    "to", "of", "in", "for", "on", "with", "at", "by", "from",
    "as", "into", "about", "and", "but", "or", "nor", "not",
    "so", "this", "that", "these", "those", "it", "its",
    "i", "me", "my", "we", "our", "you", "your", "they", "them",
    "what", "which", "who",
})


def _char_ngrams(word: str, ns: tuple[int, ...] = (3, 4)) -> List[str]:
    padded = f"#{word}#"
    grams: List[str] = []
    for n in ns:
        for i in range(len(padded) - n + 1):
            grams.append(padded[i:i + n])
    return grams


def tokenise(text: str) -> tuple[List[str], List[str]]:
    """
    Return ``(words, char_ngrams)`` from *text*.

    Words drop stopwords; n-grams come from every word longer than two
    characters, stopwords included.
    """
    all_words = _WORD_RE.findall(text.lower())
    words = [w for w in all_words if w not in _STOPWORDS and len(w) > 1]
    ngrams: List[str] = []
    for w in all_words:
        if len(w) > 2:
            ngrams.extend(_char_ngrams(w))
    return words, ngrams


# ------------------------------------------------------------------
# Providers
# ------------------------------------------------------------------

class HashingEmbedder:
    """
    Random-indexing embedder.  ``dimensions`` floats per vector,
    L2-normalised; empty input gives the zero vector.
    """

    _CACHE_MAX = 10000
    WORD_WEIGHT = 3.0
    NGRAM_WEIGHT = 1.0

    def __init__(self, dimensions: int = 384):
        self.dimensions = dimensions
        self._cache: Dict[str, np.ndarray] = {}

    def _feature_vector(self, feature: str) -> np.ndarray:
        cached = self._cache.get(feature)
        if cached is not None:
            return cached

        rounds = math.ceil(self.dimensions * 4 / 32)  # SHA-256 = 32 bytes
        seed = feature.encode("utf-8")
        chunks = []
        for _ in range(rounds):
            seed = hashlib.sha256(seed).digest()
            chunks.append(seed)
        raw = np.frombuffer(b"".join(chunks), dtype=">u4")[: self.dimensions]
        vec = raw.astype(np.float64) / 2147483647.5 - 1.0

        norm = np.linalg.norm(vec)
        vec = vec / norm if norm >= 1e-10 else np.zeros(self.dimensions)

        if len(self._cache) >= self._CACHE_MAX:
            self._cache.clear()
        self._cache[feature] = vec
        return vec

    def generate(self, text: str) -> np.ndarray:
        words, ngrams = tokenise(text)
        vec = np.zeros(self.dimensions, dtype=np.float64)
        for word, count in Counter(words).items():
            vec += self.WORD_WEIGHT * (1.0 + math.log(count)) * self._feature_vector(f"w:{word}")
        for gram, count in Counter(ngrams).items():
            vec += self.NGRAM_WEIGHT * (1.0 + math.log(count)) * self._feature_vector(f"c:{gram}")

        norm = np.linalg.norm(vec)
        if norm < 1e-10:
            return np.zeros(self.dimensions, dtype=np.float32)
        return (vec / norm).astype(np.float32)

    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [self.generate(t) for t in texts]


class _HttpEmbedder:
    """Shared urllib plumbing for the HTTP providers."""

    def __init__(self, base_url: str, model: str, dimensions: int,
                 api_key: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimensions = dimensions
        self._api_key = api_key
        self._timeout = timeout

    def _make_request(self, url: str, body: dict) -> urllib.request.Request:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        data = json.dumps(body).encode("utf-8")
        return urllib.request.Request(url, data=data, headers=headers)

    def _post_json(self, url: str, body: dict) -> dict:
        req = self._make_request(url, body)
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace")
            raise RuntimeError(f"HTTP {e.code} from {url}: {error_body}") from e
        except urllib.error.URLError as e:
            raise ConnectionError(f"Cannot reach {url}: {e.reason}") from e

    def generate(self, text: str) -> np.ndarray:
        return self.generate_batch([text])[0]

    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        raise NotImplementedError


class OpenAIEmbedder(_HttpEmbedder):
    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        data = self._post_json(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": list(texts), "dimensions": self.dimensions},
        )
        items = sorted(data.get("data", []), key=lambda d: d.get("index", 0))
        if len(items) != len(texts):
            raise RuntimeError(
                f"OpenAI returned {len(items)} embeddings for {len(texts)} inputs"
            )
        return [as_vector(item["embedding"]) for item in items]


class OllamaEmbedder(_HttpEmbedder):
    # /api/embed takes one input per call here; batching is per-request.
    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        out: List[np.ndarray] = []
        for text in texts:
            data = self._post_json(
                f"{self.base_url}/api/embed",
                {"model": self.model, "input": text, "truncate": True},
            )
            embeddings = data.get("embeddings") or []
            if not embeddings:
                raise RuntimeError("Ollama returned no embeddings")
            out.append(as_vector(embeddings[0]))
        return out


def create_provider(cfg: EmbeddingsConfig):
    """Instantiate the configured provider.  Raises ``ConfigurationError``."""
    if cfg.provider == PROVIDER_LOCAL:
        return HashingEmbedder(cfg.dimensions)
    if cfg.provider == PROVIDER_OPENAI:
        if not cfg.api_key:
            raise ConfigurationError("OpenAI API key required for the openai embedding provider")
        return OpenAIEmbedder(
            cfg.base_url or DEFAULT_OPENAI_URL,
            cfg.model or DEFAULT_OPENAI_MODEL,
            cfg.dimensions,
            api_key=cfg.api_key,
            timeout=cfg.timeout,
        )
    if cfg.provider == PROVIDER_OLLAMA:
        return OllamaEmbedder(
            cfg.base_url or DEFAULT_OLLAMA_URL,
            cfg.model or DEFAULT_OLLAMA_MODEL,
            cfg.dimensions,
            timeout=cfg.timeout,
        )
    raise ConfigurationError(f"Unknown embedding provider: {cfg.provider!r}")


# ------------------------------------------------------------------
# Generator
# ------------------------------------------------------------------

class EmbeddingGenerator:
    """
    Front door for embedding text.

    Truncates input to ``MAX_EMBED_CHARS`` and checks every returned
    vector against the configured dimension.

    Usage::

        gen = EmbeddingGenerator(config.embeddings)
        vec = gen.generate(combine_for_embedding(m.title, m.content))
    """

    def __init__(self, config: Optional[EmbeddingsConfig] = None, provider: Any = None):
        self.cfg = config or EmbeddingsConfig()
        self._provider = provider if provider is not None else create_provider(self.cfg)

    @property
    def dimensions(self) -> int:
        return self.cfg.dimensions

    @property
    def provider_name(self) -> str:
        return self.cfg.provider

    def _check(self, vec: np.ndarray) -> np.ndarray:
        if vec.shape[0] != self.cfg.dimensions:
            raise DimensionMismatchError(self.cfg.dimensions, vec.shape[0])
        return vec

    def generate(self, text: str) -> np.ndarray:
        return self._check(as_vector(self._provider.generate((text or "")[:MAX_EMBED_CHARS])))

    def generate_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed *texts* in order; empty strings map to the zero vector."""
        truncated = [(t or "")[:MAX_EMBED_CHARS] for t in texts]
        todo = [i for i, t in enumerate(truncated) if t]
        out = [np.zeros(self.cfg.dimensions, dtype=np.float32) for _ in truncated]
        if todo:
            vectors = self._provider.generate_batch([truncated[i] for i in todo])
            for i, vec in zip(todo, vectors):
                out[i] = self._check(as_vector(vec))
        return out

    def probe_dimensions(self) -> int:
        """Length of a vector the provider actually returns."""
        return int(as_vector(self._provider.generate("dimension probe")).shape[0])
