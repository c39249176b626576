"""Embedding utilities."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections import OrderedDict
from typing import Literal, Protocol, Sequence

import numpy as np

from vectoria.core.errors import EmbeddingCountMismatch

logger = logging.getLogger(__name__)

EmbeddingMode = Literal["query", "passage"]

MODE_PREFIXES: dict[str, str] = {
    "query": "query: ",
    "passage": "passage: ",
}

_TOKEN_RE = re.compile(r"\w+")
_CACHE_EVICT_FRACTION = 0.1


class EmbeddingBackend(Protocol):
    """Model runtime that turns texts into fixed-length vectors."""

    name: str

    @property
    def dimension(self) -> int:
        ...

    def embed(self, texts: Sequence[str], max_length: int) -> Sequence[Sequence[float]]:
        ...


class HashedEmbeddingBackend:
    """Lightweight hashed embedding model with deterministic output."""

    def __init__(self, dim: int = 384, name: str = "hashed") -> None:
        self.name = name
        self._dim = dim

    @property
    def dimension(self) -> int:
        return self._dim

    def embed(self, texts: Sequence[str], max_length: int) -> np.ndarray:
        vectors = np.zeros((len(texts), self._dim), dtype=np.float32)
        for row, text in enumerate(texts):
            tokens = _TOKEN_RE.findall(text.lower())[:max_length]
            for token in tokens:
                slot, sign = _hash_token(token, self._dim)
                vectors[row, slot] += sign
            norm = float(np.linalg.norm(vectors[row]))
            if norm > 0:
                vectors[row] /= norm
        return vectors


class SentenceTransformerBackend:
    """sentence-transformers model loaded on first use."""

    def __init__(self, model_name: str, batch_size: int = 32, device: str | None = None) -> None:
        self.name = model_name
        self._batch_size = batch_size
        self._device = device
        self._model = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading embedding model %s", self.name)
                self._model = SentenceTransformer(self.name, device=self._device)
        return self._model

    @property
    def dimension(self) -> int:
        return int(self._load().get_sentence_embedding_dimension())

    def embed(self, texts: Sequence[str], max_length: int) -> np.ndarray:
        model = self._load()
        model.max_seq_length = max_length
        vectors = model.encode(
            list(texts),
            batch_size=self._batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32)


class EmbeddingService:
    """Batches texts through a backend with mode prefixes and a session cache."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 32,
        cache_size: int = 5000,
        max_length: int = 256,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.backend = backend
        self.batch_size = batch_size
        self.cache_size = cache_size
        self.max_length = max_length
        self._cache: OrderedDict[tuple[str, str, int], np.ndarray] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self.backend.name

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    @property
    def cache_len(self) -> int:
        return len(self._cache)

    def embed_batch(
        self,
        texts: Sequence[str],
        mode: EmbeddingMode = "passage",
        max_length: int | None = None,
    ) -> np.ndarray:
        """Embed ``texts`` returning exactly one row per input.

        Raises ``EmbeddingCountMismatch`` if the backend returns a different
        number of vectors for any batch.
        """
        if mode not in MODE_PREFIXES:
            raise ValueError(f"Unknown embedding mode '{mode}'")
        limit = max_length or self.max_length
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)

        keys = [(text, mode, limit) for text in texts]
        known: dict[tuple[str, str, int], np.ndarray] = {}
        with self._lock:
            for key in keys:
                if key in self._cache:
                    known[key] = self._cache[key]
        pending = list(dict.fromkeys(key for key in keys if key not in known))
        computed: dict[tuple[str, str, int], np.ndarray] = {}
        prefix = MODE_PREFIXES[mode]
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            prefixed = [prefix + text for text, _, _ in batch]
            vectors = self.backend.embed(prefixed, limit)
            if len(vectors) != len(batch):
                raise EmbeddingCountMismatch(expected=len(batch), received=len(vectors))
            for key, vector in zip(batch, vectors):
                computed[key] = np.asarray(vector, dtype=np.float32)
        if pending:
            logger.debug("Embedded %s new texts in %s mode", len(pending), mode)

        with self._lock:
            for key, vector in computed.items():
                self._cache[key] = vector
            self._evict()

        rows = [computed[key] if key in computed else known[key] for key in keys]
        matrix = np.vstack(rows).astype(np.float32, copy=False)
        if matrix.shape[0] != len(texts):
            raise EmbeddingCountMismatch(expected=len(texts), received=matrix.shape[0])
        return matrix

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed_batch([text], mode="query")[0]

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _evict(self) -> None:
        if self.cache_size <= 0:
            self._cache.clear()
            return
        if len(self._cache) <= self.cache_size:
            return
        drop = max(len(self._cache) - self.cache_size, int(self.cache_size * _CACHE_EVICT_FRACTION))
        for _ in range(min(drop, len(self._cache))):
            self._cache.popitem(last=False)


def summarize_for_clustering(text: str, max_tokens: int = 256) -> str:
    """Keep the first ``max_tokens`` whitespace tokens of ``text``."""
    tokens = text.split()
    if len(tokens) <= max_tokens:
        return text.strip()
    return " ".join(tokens[:max_tokens]) + "..."


def build_embedding_service(settings) -> EmbeddingService:
    """Construct the configured embedding backend and wrap it."""
    if settings.embedding_backend == "sentence-transformers":
        backend: EmbeddingBackend = SentenceTransformerBackend(
            settings.embedding_model, batch_size=settings.embedding_batch_size
        )
    else:
        backend = HashedEmbeddingBackend(dim=settings.embedding_dim, name=f"hashed-{settings.embedding_dim}")
    return EmbeddingService(
        backend,
        batch_size=settings.embedding_batch_size,
        cache_size=settings.embedding_cache_size,
        max_length=settings.embedding_max_length,
    )


def _hash_token(token: str, dim: int) -> tuple[int, float]:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim, 1.0 if (value >> 63) & 1 == 0 else -1.0


__all__ = [
    "EmbeddingMode",
    "MODE_PREFIXES",
    "EmbeddingBackend",
    "HashedEmbeddingBackend",
    "SentenceTransformerBackend",
    "EmbeddingService",
    "summarize_for_clustering",
    "build_embedding_service",
]
