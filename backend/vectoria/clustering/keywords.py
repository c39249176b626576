"""Per-cluster keyword extraction by member-document frequency."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from sklearn.feature_extraction.text import CountVectorizer

from vectoria.models.entities import NOISE_LABEL, KeywordScore

logger = logging.getLogger(__name__)

KEYWORD_TOKEN_PATTERN = r"(?u)\b\w{4,}\b"


@dataclass(slots=True, frozen=True)
class KeywordOptions:
    metadata_top_n: int = 10
    viz_top_n: int = 3
    stop_words: str | None = "english"


@dataclass(slots=True)
class ClusterKeywords:
    metadata: list[str] = field(default_factory=list)
    scored: list[KeywordScore] = field(default_factory=list)
    viz: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metadata": list(self.metadata),
            "scored": [item.to_dict() for item in self.scored],
            "viz": list(self.viz),
        }


def extract_cluster_keywords(
    texts: Sequence[str],
    labels: Sequence[int] | np.ndarray,
    options: KeywordOptions | None = None,
) -> dict[int, ClusterKeywords]:
    """Rank terms per non-noise cluster by the share of members containing them.

    Terms are lowercased words of at least four characters. Ties are broken
    alphabetically. Noise documents never contribute.
    """
    opts = options or KeywordOptions()
    if len(texts) != len(labels):
        raise ValueError("texts and labels must have the same length")
    members: dict[int, list[str]] = {}
    for text, label in zip(texts, labels):
        label = int(label)
        if label == NOISE_LABEL:
            continue
        members.setdefault(label, []).append(text or "")
    if not members:
        return {}

    result: dict[int, ClusterKeywords] = {}
    for label in sorted(members):
        docs = members[label]
        vectorizer = CountVectorizer(
            binary=True,
            lowercase=True,
            token_pattern=KEYWORD_TOKEN_PATTERN,
            stop_words=opts.stop_words,
        )
        try:
            presence = vectorizer.fit_transform(docs)
        except ValueError:
            # empty vocabulary after filtering
            result[label] = ClusterKeywords()
            continue
        doc_freq = np.asarray(presence.sum(axis=0)).ravel()
        terms = vectorizer.get_feature_names_out()
        ranked = sorted(zip(terms, doc_freq), key=lambda item: (-item[1], item[0]))
        top = ranked[: opts.metadata_top_n]
        scored = [KeywordScore(keyword=str(term), score=float(freq) / len(docs)) for term, freq in top]
        result[label] = ClusterKeywords(
            metadata=[item.keyword for item in scored],
            scored=scored,
            viz=[item.keyword for item in scored[: opts.viz_top_n]],
        )
    logger.debug("Extracted keywords for %s clusters", len(result))
    return result


__all__ = ["KeywordOptions", "ClusterKeywords", "extract_cluster_keywords", "KEYWORD_TOKEN_PATTERN"]
