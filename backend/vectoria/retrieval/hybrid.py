"""Hybrid search utilities."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Collection, Sequence, Tuple

import numpy as np

from vectoria.core.errors import ConsistencyViolation, IndexNotBuiltError
from vectoria.models.entities import MetadataValue
from vectoria.retrieval.lexical import LexicalHit, LexicalIndex
from vectoria.retrieval.vector_index import VectorHit, VectorIndex
from vectoria.utils.ids import new_id

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60


@dataclass(slots=True)
class HybridIndexEntry:
    id: str
    text: str
    vector: np.ndarray | Sequence[float] | None = None
    metadata: dict[str, MetadataValue] = field(default_factory=dict)


@dataclass(slots=True)
class RankedItem:
    identifier: str
    score: float


@dataclass(slots=True)
class FusedHit:
    id: str
    score: float
    vector_score: float | None = None
    bm25_score: float | None = None
    vector_rank: int | None = None
    bm25_rank: int | None = None
    text: str = ""
    metadata: dict[str, MetadataValue] = field(default_factory=dict)


def reciprocal_rank_fusion(
    results: Sequence[Sequence[Tuple[str, float]]],
    weights: Sequence[float] | None = None,
    k: int = DEFAULT_RRF_K,
) -> list[RankedItem]:
    """Combine rankings using weighted reciprocal rank fusion.

    Each list contributes ``weight / (k + rank)`` with 1-based ranks. Ties are
    broken by the best score a candidate had in the first list, then by first
    appearance, so identical inputs always give the same order.
    """
    weights = list(weights) if weights is not None else [1.0] * len(results)
    if len(weights) != len(results):
        raise ValueError("One weight is required per ranking")
    scores: dict[str, float] = {}
    primary: dict[str, float] = {}
    seen: dict[str, int] = {}
    for list_index, (hits, weight) in enumerate(zip(results, weights)):
        for rank, (identifier, score) in enumerate(hits, start=1):
            seen.setdefault(identifier, len(seen))
            scores[identifier] = scores.get(identifier, 0.0) + weight / (k + rank)
            if list_index == 0:
                primary[identifier] = score
    fused = sorted(
        scores.items(),
        key=lambda item: (-item[1], -primary.get(item[0], float("-inf")), seen[item[0]]),
    )
    return [RankedItem(identifier=identifier, score=score) for identifier, score in fused]


def fuse_hits(
    vector_hits: Sequence[VectorHit],
    lexical_hits: Sequence[LexicalHit],
    vector_weight: float = 0.6,
    k: int = DEFAULT_RRF_K,
) -> tuple[list[FusedHit], str]:
    """Fuse vector and BM25 hits; returns the hits and the fusion method used."""
    if vector_weight >= 1.0:
        method = "vector_only"
        lexical_hits = []
    elif vector_weight <= 0.0:
        method = "bm25_only"
        vector_hits = []
    else:
        method = "weighted_rrf"

    ranked = reciprocal_rank_fusion(
        [
            [(hit.id, hit.score) for hit in vector_hits],
            [(hit.id, hit.score) for hit in lexical_hits],
        ],
        weights=[vector_weight, 1.0 - vector_weight],
        k=k,
    )
    by_vector = {hit.id: (rank, hit) for rank, hit in enumerate(vector_hits, start=1)}
    by_lexical = {hit.id: (rank, hit) for rank, hit in enumerate(lexical_hits, start=1)}
    fused: list[FusedHit] = []
    for item in ranked:
        vector_entry = by_vector.get(item.identifier)
        lexical_entry = by_lexical.get(item.identifier)
        source = vector_entry[1] if vector_entry else lexical_entry[1]
        fused.append(
            FusedHit(
                id=item.identifier,
                score=item.score,
                vector_score=vector_entry[1].score if vector_entry else None,
                bm25_score=lexical_entry[1].score if lexical_entry else None,
                vector_rank=vector_entry[0] if vector_entry else None,
                bm25_rank=lexical_entry[0] if lexical_entry else None,
                text=source.text,
                metadata=dict(source.metadata),
            )
        )
    return fused, method


class HybridIndex:
    """Vector and lexical sub-indices built together over one id set."""

    def __init__(self, name: str = "index", k1: float = 1.5, b: float = 0.75) -> None:
        self.name = name
        self.vector = VectorIndex()
        self.lexical = LexicalIndex(k1=k1, b=b)
        self.build_token: str | None = None

    @property
    def built(self) -> bool:
        return self.build_token is not None

    @property
    def size(self) -> int:
        return self.vector.size

    @property
    def ids(self) -> list[str]:
        return self.vector.ids

    def build(self, entries: Sequence[HybridIndexEntry]) -> None:
        missing = [entry.id for entry in entries if entry.vector is None]
        if missing:
            raise ValueError(f"Entries without vectors cannot be indexed: {missing[:5]}")
        ids = [entry.id for entry in entries]
        texts = [entry.text for entry in entries]
        metadata = [entry.metadata for entry in entries]
        if entries:
            vectors = np.vstack([np.asarray(entry.vector, dtype=np.float32) for entry in entries])
        else:
            vectors = np.zeros((0, 0), dtype=np.float32)
        self.build_from_arrays(ids, texts, vectors, metadata)

    def build_from_arrays(
        self,
        ids: Sequence[str],
        texts: Sequence[str],
        vectors: np.ndarray,
        metadata: Sequence[dict[str, MetadataValue]] | None = None,
    ) -> None:
        token = new_id(self.name)
        self.build_token = None
        self.vector.build(vectors, ids, metadata=metadata, texts=texts, build_token=token)
        self.lexical.build(texts, ids, metadata=metadata, build_token=token)
        self.build_token = token
        logger.debug("Built %s index over %s entries", self.name, len(ids))

    def ensure_consistent(self) -> None:
        if not self.vector.built or not self.lexical.built or self.build_token is None:
            raise IndexNotBuiltError(f"{self.name} index has not been built")
        if self.vector.build_token != self.build_token or self.lexical.build_token != self.build_token:
            raise ConsistencyViolation(f"{self.name} index siblings were built separately")
        if self.vector.ids != self.lexical.ids:
            raise ConsistencyViolation(f"{self.name} index siblings cover different ids")

    def search_vector(
        self,
        query: np.ndarray | Sequence[float],
        k: int = 10,
        min_score: float = 0.0,
        allow: Collection[str] | None = None,
    ) -> list[VectorHit]:
        self.ensure_consistent()
        return self.vector.search(query, k=k, min_score=min_score, allow=allow)

    def search_lexical(self, query: str, k: int = 10, allow: Collection[str] | None = None) -> list[LexicalHit]:
        self.ensure_consistent()
        return self.lexical.search(query, k=k, allow=allow)

    def search(
        self,
        query: str,
        query_vector: np.ndarray | Sequence[float],
        k: int = 10,
        vector_weight: float = 0.6,
        rrf_k: int = DEFAULT_RRF_K,
        min_score: float = 0.0,
        allow: Collection[str] | None = None,
    ) -> list[FusedHit]:
        vector_hits = self.search_vector(query_vector, k=k, min_score=min_score, allow=allow)
        lexical_hits = self.search_lexical(query, k=k, allow=allow)
        fused, _ = fuse_hits(vector_hits, lexical_hits, vector_weight=vector_weight, k=rrf_k)
        return fused[:k]


__all__ = [
    "HybridIndexEntry",
    "HybridIndex",
    "RankedItem",
    "FusedHit",
    "reciprocal_rank_fusion",
    "fuse_hits",
]
