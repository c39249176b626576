"""Nonlinear dimensionality reduction for the document tier."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Literal

import numpy as np

from vectoria.core.control import CancellationToken, ProgressSink, scaled_progress
from vectoria.core.errors import ProcessingCancelled
from vectoria.reduction.layout import (
    find_ab_params,
    fuzzy_simplicial_set,
    graph_edges,
    optimize_layout,
    pca_init,
    random_init,
)
from vectoria.reduction.neighbors import knn_graph
from vectoria.reduction.validation import validate_projection

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ReductionOptions:
    target_dim: int = 2
    n_neighbors: int = 15
    min_dist: float = 0.1
    metric: Literal["cosine", "euclidean"] = "cosine"
    n_epochs: int = 500
    learning_rate: float = 1.0
    negative_sample_rate: int = 5
    approximate_threshold: int = 10000
    random_state: int = 42
    init: Literal["random", "pca"] = "random"
    spread: float = 1.0

    def __post_init__(self) -> None:
        if self.target_dim < 1:
            raise ValueError("target_dim must be at least 1")
        if self.n_neighbors < 1:
            raise ValueError("n_neighbors must be at least 1")
        if self.n_epochs < 1:
            raise ValueError("n_epochs must be at least 1")
        if self.min_dist < 0:
            raise ValueError("min_dist must be non-negative")


def clustering_options(settings) -> ReductionOptions:
    """Options for the high-dimensional projection fed to clustering."""
    return ReductionOptions(
        target_dim=settings.umap_clustering_dimensions,
        n_neighbors=settings.umap_n_neighbors,
        min_dist=0.0,
        metric=settings.umap_metric,
        n_epochs=settings.umap_n_epochs,
        approximate_threshold=settings.umap_approximate_threshold,
        random_state=settings.umap_random_state,
    )


def visualization_options(settings) -> ReductionOptions:
    """Options for the 2D projection used for display."""
    return ReductionOptions(
        target_dim=2,
        n_neighbors=settings.umap_n_neighbors,
        min_dist=settings.umap_min_dist,
        metric=settings.umap_metric,
        n_epochs=settings.umap_n_epochs,
        approximate_threshold=settings.umap_approximate_threshold,
        random_state=settings.umap_random_state,
    )


class Reducer:
    """Neighbor graph plus layout optimization at a requested dimensionality."""

    def __init__(self, stage: str = "reduce") -> None:
        self.stage = stage

    def reduce(
        self,
        vectors: np.ndarray,
        options: ReductionOptions | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
        validate: bool = True,
    ) -> np.ndarray:
        """Project ``vectors`` to ``options.target_dim`` coordinates.

        Raises ``NumericAnomalyError`` when the result is non-finite, extreme
        or collapsed and ``validate`` is set, and ``ProcessingCancelled`` when
        the token fires between epochs.
        """
        opts = options or ReductionOptions()
        data = np.asarray(vectors, dtype=np.float32)
        if data.ndim != 2:
            data = data.reshape(len(data), -1)
        n = data.shape[0]
        if n == 0:
            return np.zeros((0, opts.target_dim), dtype=np.float64)
        if n == 1:
            return np.zeros((1, opts.target_dim), dtype=np.float64)

        report = scaled_progress(progress, self.stage, 0.0, 1.0)
        started = time.perf_counter()
        k = min(opts.n_neighbors, n - 1)
        report(0.0, f"building {k}-NN graph for {n} points")
        graph = knn_graph(data, k, metric=opts.metric, approximate_threshold=opts.approximate_threshold)
        if cancel is not None and cancel.cancelled:
            raise ProcessingCancelled(self.stage)

        fuzzy = fuzzy_simplicial_set(graph)
        edges = graph_edges(fuzzy, opts.n_epochs)
        a, b = find_ab_params(opts.min_dist, opts.spread)
        report(0.1, "graph ready")

        rng = np.random.default_rng(opts.random_state)
        if opts.init == "pca":
            embedding = pca_init(data.astype(np.float64), opts.target_dim, rng)
        else:
            embedding = random_init(n, opts.target_dim, rng)

        layout_progress = scaled_progress(progress, self.stage, 0.1, 1.0)
        embedding = optimize_layout(
            embedding,
            edges,
            n_epochs=opts.n_epochs,
            a=a,
            b=b,
            rng=rng,
            learning_rate=opts.learning_rate,
            negative_sample_rate=opts.negative_sample_rate,
            progress=layout_progress,
            cancel=cancel,
            stage=self.stage,
        )
        logger.info(
            "Reduced %s points to %s dims in %.2fs (approximate=%s)",
            n,
            opts.target_dim,
            time.perf_counter() - started,
            graph.approximate,
        )
        if validate:
            validate_projection(embedding, label=f"{opts.target_dim}d projection")
        return embedding


__all__ = ["ReductionOptions", "Reducer", "clustering_options", "visualization_options"]
