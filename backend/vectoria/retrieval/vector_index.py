"""Vector index abstraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Mapping, Sequence

import numpy as np

from vectoria.core.errors import IndexNotBuiltError
from vectoria.models.entities import MetadataValue

_NORM_FLOOR = 1e-12


@dataclass(slots=True)
class VectorHit:
    id: str
    score: float
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    text: str = ""


class VectorIndex:
    """Exact in-memory cosine index over a contiguous float32 matrix."""

    def __init__(self) -> None:
        self._ids: list[str] = []
        self._texts: list[str] = []
        self._metadata: list[dict[str, MetadataValue]] = []
        self._matrix: np.ndarray | None = None
        self._norms: np.ndarray | None = None
        self.build_token: str | None = None

    @property
    def built(self) -> bool:
        return self._matrix is not None

    @property
    def size(self) -> int:
        return len(self._ids)

    @property
    def dim(self) -> int:
        return 0 if self._matrix is None else int(self._matrix.shape[1])

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def build(
        self,
        vectors: np.ndarray | Sequence[Sequence[float]],
        ids: Sequence[str],
        metadata: Sequence[Mapping[str, MetadataValue]] | None = None,
        texts: Sequence[str] | None = None,
        build_token: str | None = None,
    ) -> None:
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim == 1 and matrix.size == 0:
            matrix = matrix.reshape(0, 0)
        if matrix.ndim != 2:
            raise ValueError("Vectors must form a 2D matrix")
        if matrix.shape[0] != len(ids):
            raise ValueError("Vector count does not match id count")
        if metadata is not None and len(metadata) != len(ids):
            raise ValueError("Metadata count does not match id count")
        if texts is not None and len(texts) != len(ids):
            raise ValueError("Text count does not match id count")
        if len(set(ids)) != len(ids):
            raise ValueError("Index ids must be unique")
        self._matrix = np.ascontiguousarray(matrix)
        self._norms = np.maximum(np.linalg.norm(self._matrix, axis=1), _NORM_FLOOR)
        self._ids = list(ids)
        self._metadata = [dict(item) for item in metadata] if metadata is not None else [{} for _ in ids]
        self._texts = list(texts) if texts is not None else ["" for _ in ids]
        self.build_token = build_token

    def vector(self, identifier: str) -> np.ndarray:
        if self._matrix is None:
            raise IndexNotBuiltError("Vector index has not been built")
        return self._matrix[self._ids.index(identifier)]

    def search(
        self,
        query: np.ndarray | Sequence[float],
        k: int = 10,
        min_score: float = 0.0,
        allow: Collection[str] | None = None,
    ) -> list[VectorHit]:
        """Score every row by cosine similarity and return the top ``k``.

        Rows below ``min_score`` or outside ``allow`` are skipped. Ties keep
        insertion order.
        """
        if self._matrix is None or self._norms is None:
            raise IndexNotBuiltError("Vector index has not been built")
        if k <= 0 or not self._ids:
            return []
        vector = np.asarray(query, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self._matrix.shape[1]:
            raise ValueError("Query vector dimension mismatch")
        query_norm = max(float(np.linalg.norm(vector)), _NORM_FLOOR)
        scores = (self._matrix @ vector) / (self._norms * query_norm)

        candidates = np.flatnonzero(scores >= min_score)
        if allow is not None:
            allowed = allow if isinstance(allow, (set, frozenset)) else set(allow)
            candidates = np.array([idx for idx in candidates if self._ids[idx] in allowed], dtype=np.int64)
        if candidates.size == 0:
            return []
        # stable sort on negated scores keeps insertion order for ties
        order = candidates[np.argsort(-scores[candidates], kind="stable")][:k]
        return [
            VectorHit(
                id=self._ids[idx],
                score=float(scores[idx]),
                metadata=dict(self._metadata[idx]),
                text=self._texts[idx],
            )
            for idx in order
        ]


__all__ = ["VectorIndex", "VectorHit"]
