"""Density-based clustering over the clustering projection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
from sklearn.cluster import HDBSCAN

from vectoria.clustering.keywords import ClusterKeywords, KeywordOptions, extract_cluster_keywords
from vectoria.core.control import CancellationToken, ProgressSink, scaled_progress
from vectoria.core.errors import ProcessingCancelled
from vectoria.models.entities import NOISE_LABEL, Cluster, Document

logger = logging.getLogger(__name__)

NOISE_DEFAULT_PROBABILITY = 0.5
LABELED_DEFAULT_PROBABILITY = 1.0


@dataclass(slots=True, frozen=True)
class ClusteringOptions:
    min_cluster_size: int = 5
    min_samples: int = 5
    metric: str = "euclidean"
    keywords: KeywordOptions = field(default_factory=KeywordOptions)

    def __post_init__(self) -> None:
        if self.min_cluster_size < 1:
            raise ValueError("min_cluster_size must be at least 1")
        if self.min_samples < 1:
            raise ValueError("min_samples must be at least 1")


@dataclass(slots=True)
class ClusteringResult:
    labels: np.ndarray
    probabilities: np.ndarray
    clusters: dict[int, Cluster] = field(default_factory=dict)
    keywords: dict[int, ClusterKeywords] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    invoked: bool = False

    @property
    def num_clusters(self) -> int:
        return len([label for label in self.clusters if label != NOISE_LABEL])

    @property
    def noise_count(self) -> int:
        return int((self.labels == NOISE_LABEL).sum())


class DensityClusterer:
    """HDBSCAN wrapper that enforces the noise and probability policy."""

    def __init__(self, stage: str = "clustering") -> None:
        self.stage = stage

    def cluster(
        self,
        points: np.ndarray | Sequence[Sequence[float]],
        options: ClusteringOptions | None = None,
        documents: Sequence[Document] | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ClusteringResult:
        opts = options or ClusteringOptions()
        data = np.asarray(points, dtype=np.float64)
        n = 0 if data.size == 0 and data.ndim < 2 else data.shape[0]
        report = scaled_progress(progress, self.stage, 0.0, 1.0)
        if documents is not None and len(documents) != n:
            raise ValueError("documents must align with points")

        if n == 0:
            return ClusteringResult(labels=np.zeros(0, dtype=np.int64), probabilities=np.zeros(0, dtype=np.float64))
        floor = max(2, opts.min_cluster_size)
        if n < floor:
            logger.info("Only %s points (< %s); all marked as noise", n, floor)
            labels = np.full(n, NOISE_LABEL, dtype=np.int64)
            probabilities = np.zeros(n, dtype=np.float64)
            return self._finish(labels, probabilities, documents, opts, warnings=[], invoked=False)

        if cancel is not None and cancel.cancelled:
            raise ProcessingCancelled(self.stage)
        report(0.0, f"clustering {n} points")
        model = HDBSCAN(
            min_cluster_size=max(2, opts.min_cluster_size),
            min_samples=min(opts.min_samples, n),
            metric=opts.metric,
        )
        raw_labels = model.fit_predict(data)
        raw_probabilities = getattr(model, "probabilities_", None)
        report(1.0, "clustering complete")
        if cancel is not None and cancel.cancelled:
            raise ProcessingCancelled(self.stage)

        warnings: list[str] = []
        labels, probabilities = reconcile_outputs(n, raw_labels, raw_probabilities, warnings)
        return self._finish(labels, probabilities, documents, opts, warnings=warnings, invoked=True)

    def _finish(
        self,
        labels: np.ndarray,
        probabilities: np.ndarray,
        documents: Sequence[Document] | None,
        opts: ClusteringOptions,
        warnings: list[str],
        invoked: bool,
    ) -> ClusteringResult:
        ids = [doc.id for doc in documents] if documents is not None else [str(i) for i in range(len(labels))]
        keywords: dict[int, ClusterKeywords] = {}
        if documents is not None:
            keywords = extract_cluster_keywords([doc.text for doc in documents], labels, opts.keywords)
        result = ClusteringResult(
            labels=labels,
            probabilities=probabilities,
            clusters=build_clusters(ids, labels, probabilities, keywords),
            keywords=keywords,
            warnings=warnings,
            invoked=invoked,
        )
        logger.info("Found %s clusters, %s noise points", result.num_clusters, result.noise_count)
        return result


def build_clusters(
    ids: Sequence[str],
    labels: np.ndarray,
    probabilities: np.ndarray,
    keywords: dict[int, ClusterKeywords] | None = None,
) -> dict[int, Cluster]:
    """Cluster summaries keyed by label, noise included."""
    clusters: dict[int, Cluster] = {}
    for identifier, label, probability in zip(ids, labels.tolist(), probabilities.tolist()):
        cluster = clusters.setdefault(label, Cluster(label=label, member_count=0))
        cluster.member_count += 1
        cluster.probability_by_member[identifier] = probability
    for label, entry in (keywords or {}).items():
        if label in clusters:
            clusters[label].keywords = list(entry.scored)
            clusters[label].viz_keywords = list(entry.viz)
    return clusters


def reconcile_outputs(
    n: int,
    raw_labels: Any,
    raw_probabilities: Any,
    warnings: list[str],
) -> tuple[np.ndarray, np.ndarray]:
    """Force labels/probabilities to length ``n`` and apply the probability policy.

    Short arrays are padded with the noise label and probability 0, long ones
    truncated; each correction is logged and recorded in ``warnings``.
    """
    labels = np.asarray(raw_labels if raw_labels is not None else [], dtype=np.int64).ravel()
    if labels.shape[0] != n:
        message = f"Cluster label count {labels.shape[0]} != point count {n}; padded/truncated with noise"
        logger.warning(message)
        warnings.append(message)
        labels = _resize(labels, n, NOISE_LABEL).astype(np.int64)
    labels[labels < NOISE_LABEL] = NOISE_LABEL

    defaults = np.where(labels == NOISE_LABEL, NOISE_DEFAULT_PROBABILITY, LABELED_DEFAULT_PROBABILITY)
    if raw_probabilities is None:
        probabilities = defaults.astype(np.float64)
    else:
        raw = list(np.asarray(raw_probabilities, dtype=object).ravel())
        missing = np.array([value is None for value in raw], dtype=bool)
        probabilities = np.array([0.0 if value is None else float(value) for value in raw], dtype=np.float64)
        if probabilities.shape[0] != n:
            message = f"Cluster probability count {probabilities.shape[0]} != point count {n}; padded/truncated"
            logger.warning(message)
            warnings.append(message)
            probabilities = _resize(probabilities, n, 0.0)
            missing = _resize(missing, n, False)
        probabilities = np.where(missing, defaults, probabilities)
    probabilities = np.where(np.isfinite(probabilities), probabilities, 0.0)
    return labels, np.clip(probabilities, 0.0, 1.0)


def cluster_stats(labels: np.ndarray | Sequence[int], probabilities: np.ndarray | Sequence[float]) -> dict[str, Any]:
    """Cluster count, noise share, sizes and mean probability per cluster."""
    labels_arr = np.asarray(labels, dtype=np.int64)
    probs = np.asarray(probabilities, dtype=np.float64)
    total = int(labels_arr.size)
    noise = int((labels_arr == NOISE_LABEL).sum())
    sizes: dict[int, int] = {}
    avg_probability: dict[int, float] = {}
    for label in sorted(set(labels_arr.tolist()) - {NOISE_LABEL}):
        mask = labels_arr == label
        sizes[label] = int(mask.sum())
        avg_probability[label] = float(probs[mask].mean()) if mask.any() else 0.0
    return {
        "num_clusters": len(sizes),
        "num_noise": noise,
        "noise_percentage": (noise / total * 100.0) if total else 0.0,
        "cluster_sizes": sizes,
        "avg_probability": avg_probability,
    }


def outliers(
    ids: Sequence[str],
    labels: np.ndarray | Sequence[int],
    probabilities: np.ndarray | Sequence[float],
    threshold: float = 0.5,
) -> list[str]:
    """Ids that are noise or whose membership probability is below ``threshold``."""
    return [
        identifier
        for identifier, label, probability in zip(ids, labels, probabilities)
        if int(label) == NOISE_LABEL or float(probability) < threshold
    ]


def _resize(values: np.ndarray, n: int, fill: float) -> np.ndarray:
    if values.shape[0] >= n:
        return values[:n].copy()
    return np.concatenate([values, np.full(n - values.shape[0], fill, dtype=values.dtype)])


__all__ = [
    "ClusteringOptions",
    "ClusteringResult",
    "DensityClusterer",
    "build_clusters",
    "reconcile_outputs",
    "cluster_stats",
    "outliers",
]
