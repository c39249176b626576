"""BM25 lexical index."""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Collection, Mapping, Sequence

import numpy as np
from rank_bm25 import BM25Okapi

from vectoria.core.errors import IndexNotBuiltError
from vectoria.models.entities import MetadataValue
from vectoria.utils.text import tokenize


@dataclass(slots=True)
class LexicalHit:
    id: str
    score: float
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    text: str = ""


class _SmoothedBM25(BM25Okapi):
    """BM25 with the ``log(1 + (N - df + 0.5) / (df + 0.5))`` idf, never negative."""

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log((self.corpus_size - freq + 0.5) / (freq + 0.5) + 1.0)


class LexicalIndex:
    """Inverted index with postings of (row, tf) scored by BM25."""

    def __init__(self, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._ids: list[str] = []
        self._texts: list[str] = []
        self._metadata: list[dict[str, MetadataValue]] = []
        self._postings: dict[str, list[tuple[int, int]]] = {}
        self._doc_lengths: list[int] = []
        self._model: _SmoothedBM25 | None = None
        self._built = False
        self.build_token: str | None = None

    @property
    def built(self) -> bool:
        return self._built

    @property
    def size(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    @property
    def vocabulary_size(self) -> int:
        return len(self._postings)

    def postings(self, term: str) -> list[tuple[int, int]]:
        return list(self._postings.get(term, []))

    def build(
        self,
        texts: Sequence[str],
        ids: Sequence[str],
        metadata: Sequence[Mapping[str, MetadataValue]] | None = None,
        build_token: str | None = None,
    ) -> None:
        if len(texts) != len(ids):
            raise ValueError("Text count does not match id count")
        if metadata is not None and len(metadata) != len(ids):
            raise ValueError("Metadata count does not match id count")
        if len(set(ids)) != len(ids):
            raise ValueError("Index ids must be unique")
        corpus = [tokenize(text) for text in texts]
        postings: dict[str, list[tuple[int, int]]] = {}
        for row, tokens in enumerate(corpus):
            for term, tf in Counter(tokens).items():
                postings.setdefault(term, []).append((row, tf))
        self._ids = list(ids)
        self._texts = list(texts)
        self._metadata = [dict(item) for item in metadata] if metadata is not None else [{} for _ in ids]
        self._postings = postings
        self._doc_lengths = [len(tokens) for tokens in corpus]
        # rank_bm25 divides by the corpus size and by the total token count
        has_tokens = any(self._doc_lengths)
        self._model = _SmoothedBM25(corpus, k1=self.k1, b=self.b) if has_tokens else None
        self._built = True
        self.build_token = build_token

    def search(self, query: str, k: int = 10, allow: Collection[str] | None = None) -> list[LexicalHit]:
        """Score only documents posted under a query term; top ``k`` descending."""
        if not self._built:
            raise IndexNotBuiltError("Lexical index has not been built")
        if k <= 0 or self._model is None:
            return []
        terms = list(dict.fromkeys(tokenize(query)))
        touched: set[int] = set()
        for term in terms:
            touched.update(row for row, _ in self._postings.get(term, ()))
        if allow is not None:
            allowed = allow if isinstance(allow, (set, frozenset)) else set(allow)
            touched = {row for row in touched if self._ids[row] in allowed}
        if not touched:
            return []
        rows = sorted(touched)
        scores = np.asarray(self._model.get_batch_scores(terms, rows), dtype=np.float64)
        order = np.argsort(-scores, kind="stable")[:k]
        return [
            LexicalHit(
                id=self._ids[rows[pos]],
                score=float(scores[pos]),
                metadata=dict(self._metadata[rows[pos]]),
                text=self._texts[rows[pos]],
            )
            for pos in order
        ]


__all__ = ["LexicalIndex", "LexicalHit"]
