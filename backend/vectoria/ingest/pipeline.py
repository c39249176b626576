"""Dataset processing pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Sequence, TypeVar

import numpy as np

from vectoria.clustering.density import ClusteringOptions, ClusteringResult, DensityClusterer
from vectoria.clustering.keywords import KeywordOptions
from vectoria.core.config import Settings
from vectoria.core.control import CancellationToken, ProgressSink, noop_progress
from vectoria.core.errors import (
    ConsistencyViolation,
    InputValidationError,
    NumericAnomalyError,
    ProcessingCancelled,
    StageFailure,
)
from vectoria.core.logging import dataset_logger, get_logger
from vectoria.core.metrics import DATASET_DOCUMENTS, STAGE_DURATION, STAGE_FAILURES
from vectoria.datasets.dataset import Dataset, DatasetArtifacts, PipelineState
from vectoria.ingest.chunker import ChunkingOptions, ChunkingResult, chunk_documents, chunk_size_warning
from vectoria.ingest.dedupe import dedupe_documents
from vectoria.ingest.embeddings import EmbeddingService, summarize_for_clustering
from vectoria.ingest.fallbacks import FallbackPolicy
from vectoria.ingest.records import validate_documents
from vectoria.models.entities import NOISE_LABEL, Chunk, Document, ProcessingSummary
from vectoria.reduction.reducer import Reducer, ReductionOptions, clustering_options, visualization_options
from vectoria.retrieval.hybrid import HybridIndex, HybridIndexEntry

logger = get_logger(__name__)

T = TypeVar("T")

# overall progress fraction at which each stage starts
_STAGE_SPANS: dict[PipelineState, tuple[float, float]] = {
    PipelineState.CHUNKING: (0.0, 0.05),
    PipelineState.EMBEDDING_PARENT: (0.05, 0.2),
    PipelineState.EMBEDDING_CHUNK: (0.2, 0.4),
    PipelineState.INDEXING: (0.4, 0.45),
    PipelineState.REDUCING_CLUSTERING: (0.45, 0.7),
    PipelineState.REDUCING_VISUALIZATION: (0.7, 0.9),
    PipelineState.CLUSTERING: (0.9, 0.98),
    PipelineState.SAVED: (0.98, 1.0),
}


@dataclass(slots=True, frozen=True)
class ProcessingOptions:
    chunking: ChunkingOptions = field(default_factory=ChunkingOptions)
    clustering_reduction: ReductionOptions = field(
        default_factory=lambda: ReductionOptions(target_dim=15, min_dist=0.0)
    )
    visualization_reduction: ReductionOptions = field(
        default_factory=lambda: ReductionOptions(target_dim=2, min_dist=0.1)
    )
    clustering: ClusteringOptions = field(default_factory=ClusteringOptions)
    summary_max_tokens: int = 256
    embedding_max_length: int = 256

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessingOptions":
        return cls(
            chunking=ChunkingOptions(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                min_chunk_size=settings.min_chunk_size,
                batch_size=settings.chunk_batch_size,
                max_workers=settings.chunk_max_workers,
                enabled=settings.chunking_enabled,
            ),
            clustering_reduction=clustering_options(settings),
            visualization_reduction=visualization_options(settings),
            clustering=ClusteringOptions(
                min_cluster_size=settings.hdbscan_min_cluster_size,
                min_samples=settings.hdbscan_min_samples,
                metric=settings.hdbscan_metric,
                keywords=KeywordOptions(
                    metadata_top_n=settings.keywords_metadata_top_n,
                    viz_top_n=settings.keywords_viz_top_n,
                ),
            ),
            summary_max_tokens=settings.summary_max_tokens,
            embedding_max_length=settings.embedding_max_length,
        )


class DatasetPipeline:
    """Run the staged processing state machine for one dataset at a time.

    Stages run strictly in order and each fully materializes its output. The
    dataset only sees the new snapshot once every stage succeeded; a failure
    or cancellation leaves the previously published snapshot in place.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        options: ProcessingOptions | None = None,
        fallback_policy: FallbackPolicy | None = None,
        clusterer: DensityClusterer | None = None,
    ) -> None:
        self.embedding_service = embedding_service
        self.options = options or ProcessingOptions()
        self.fallback_policy = fallback_policy or FallbackPolicy()
        self.clusterer = clusterer or DensityClusterer()

    def process_dataset(
        self,
        dataset: Dataset,
        documents: Sequence[Document],
        options: ProcessingOptions | None = None,
        progress: ProgressSink | None = None,
        cancel: CancellationToken | None = None,
        empty_row_count: int = 0,
        excluded_columns: Sequence[str] = (),
    ) -> ProcessingSummary:
        opts = options or self.options
        sink = progress or noop_progress
        validate_documents(documents)
        deduped = dedupe_documents(documents)
        if not deduped.documents:
            raise InputValidationError("No documents with non-empty text were supplied")

        with dataset.processing_lock:
            version = dataset.start_run()
            log = dataset_logger(logger, dataset.id, version=version)
            summary = ProcessingSummary(
                dataset_id=dataset.id,
                version=version,
                num_documents=len(deduped.documents),
                empty_row_count=empty_row_count + deduped.empty_count,
                duplicate_count=deduped.duplicate_count,
                excluded_columns=list(excluded_columns),
            )
            if deduped.duplicate_count:
                summary.warnings.append(f"Dropped {deduped.duplicate_count} duplicate documents")
            if summary.empty_row_count:
                summary.warnings.append(f"Dropped {summary.empty_row_count} empty rows")
            if summary.excluded_columns:
                summary.warnings.append("Excluded non-scalar columns: " + ", ".join(summary.excluded_columns))
            log.info(
                "Processing %s documents (%s duplicates dropped)",
                len(deduped.documents),
                deduped.duplicate_count,
            )
            try:
                artifacts = self._run(dataset, deduped.documents, opts, summary, sink, cancel, version)
            except ProcessingCancelled as exc:
                dataset.abort_run()
                log.info("Processing cancelled during %s", exc.stage)
                raise
            except StageFailure as exc:
                dataset.abort_run()
                STAGE_FAILURES.labels(stage=exc.stage).inc()
                log.error("Processing failed: %s", exc)
                raise
            dataset.publish(artifacts)
            DATASET_DOCUMENTS.set(len(artifacts.documents))
            sink(PipelineState.SAVED.value, 1.0, "saved")
            return summary

    # Stages -----------------------------------------------------------

    def _run(
        self,
        dataset: Dataset,
        documents: list[Document],
        opts: ProcessingOptions,
        summary: ProcessingSummary,
        sink: ProgressSink,
        cancel: CancellationToken | None,
        version: int,
    ) -> DatasetArtifacts:
        def stage(state: PipelineState, fn: Callable[[], T]) -> T:
            return self._stage(dataset, state, fn, summary, sink, cancel)

        chunked = stage(PipelineState.CHUNKING, lambda: self._chunk(documents, opts, summary))
        parent_vectors = stage(
            PipelineState.EMBEDDING_PARENT,
            lambda: self.embedding_service.embed_batch(
                [summarize_for_clustering(doc.text, opts.summary_max_tokens) for doc in documents],
                mode="query",
                max_length=opts.embedding_max_length,
            ),
        )
        chunk_vectors = stage(
            PipelineState.EMBEDDING_CHUNK,
            lambda: self.embedding_service.embed_batch(
                [chunk.text for chunk in chunked.chunks],
                mode="passage",
                max_length=opts.embedding_max_length,
            ),
        )
        chunk_index, _ = stage(
            PipelineState.INDEXING,
            lambda: (
                build_chunk_index(chunked.chunks, chunk_vectors),
                build_document_index(documents, parent_vectors),
            ),
        )
        projection_clustering = stage(
            PipelineState.REDUCING_CLUSTERING,
            lambda: self._reduce(
                PipelineState.REDUCING_CLUSTERING, parent_vectors, opts.clustering_reduction, summary, sink, cancel
            ),
        )
        projection_2d = stage(
            PipelineState.REDUCING_VISUALIZATION,
            lambda: self._reduce(
                PipelineState.REDUCING_VISUALIZATION,
                parent_vectors,
                opts.visualization_reduction,
                summary,
                sink,
                cancel,
            ),
        )
        clustering = stage(
            PipelineState.CLUSTERING,
            lambda: self.clusterer.cluster(
                projection_clustering,
                opts.clustering,
                documents=documents,
                progress=_span_sink(sink, PipelineState.CLUSTERING),
                cancel=cancel,
            ),
        )
        summary.warnings.extend(clustering.warnings)
        summary.num_clusters = clustering.num_clusters
        summary.noise_count = clustering.noise_count

        def save() -> DatasetArtifacts:
            enriched = merge_cluster_metadata(documents, clustering)
            # re-index documents so hits carry the merged cluster metadata
            artifacts = DatasetArtifacts(
                version=version,
                documents=tuple(enriched),
                chunks=tuple(chunked.chunks),
                chunk_to_parent=dict(chunked.chunk_to_parent),
                parent_vectors=parent_vectors,
                chunk_vectors=chunk_vectors,
                document_index=build_document_index(enriched, parent_vectors),
                chunk_index=chunk_index,
                projection_clustering=projection_clustering,
                projection_2d=projection_2d,
                clustering=clustering,
                summary=summary,
                model_name=self.embedding_service.model_name,
                dimension=int(parent_vectors.shape[1]) if parent_vectors.ndim == 2 else 0,
            )
            return artifacts

        return stage(PipelineState.SAVED, save)

    def _stage(
        self,
        dataset: Dataset,
        state: PipelineState,
        fn: Callable[[], T],
        summary: ProcessingSummary,
        sink: ProgressSink,
        cancel: CancellationToken | None,
    ) -> T:
        if cancel is not None and cancel.cancelled:
            raise ProcessingCancelled(state.value)
        dataset.set_state(state)
        start, _ = _STAGE_SPANS[state]
        sink(state.value, start, f"{state.value} started")
        started = time.perf_counter()
        try:
            result = fn()
        except (ProcessingCancelled, StageFailure):
            raise
        except Exception as exc:
            raise StageFailure(state.value, exc) from exc
        elapsed = time.perf_counter() - started
        STAGE_DURATION.labels(stage=state.value).observe(elapsed)
        summary.timings[state.value] = round(elapsed, 4)
        stage_log = dataset_logger(logger, dataset.id, stage=state.value)
        stage_log.info("Stage %s finished in %.3fs", state.value, elapsed)
        return result

    def _chunk(self, documents: list[Document], opts: ProcessingOptions, summary: ProcessingSummary) -> ChunkingResult:
        warning = chunk_size_warning(opts.chunking, opts.embedding_max_length)
        if warning:
            logger.warning(warning)
            summary.warnings.append(warning)
        result = chunk_documents(documents, opts.chunking)
        verify_chunk_parents(result, documents)
        summary.num_chunks = len(result.chunks)
        return result

    def _reduce(
        self,
        state: PipelineState,
        vectors: np.ndarray,
        options: ReductionOptions,
        summary: ProcessingSummary,
        sink: ProgressSink,
        cancel: CancellationToken | None,
    ) -> np.ndarray:
        reducer = Reducer(stage=state.value)
        current = options
        attempts = 0
        while True:
            try:
                return reducer.reduce(vectors, current, progress=_span_sink(sink, state), cancel=cancel)
            except NumericAnomalyError as exc:
                if not self.fallback_policy.should_retry(exc.kind, attempts):
                    raise
                attempts += 1
                current = self.fallback_policy.retry_options(exc.kind, current, attempts)
                message = (
                    f"{state.value}: {exc.kind} layout, retry {attempts} "
                    f"with seed {current.random_state} and {current.init} init"
                )
                logger.warning(message)
                summary.fallbacks.append(message)


def verify_chunk_parents(result: ChunkingResult, documents: Sequence[Document]) -> None:
    """Every chunk must map to exactly one known parent."""
    known = {doc.id for doc in documents}
    for chunk in result.chunks:
        if result.chunk_to_parent.get(chunk.id) != chunk.parent_id:
            raise ConsistencyViolation(f"Chunk {chunk.id} is missing from the chunk map")
        if chunk.parent_id not in known:
            raise ConsistencyViolation(f"Chunk {chunk.id} references unknown parent {chunk.parent_id}")
    if len(result.chunk_to_parent) != len(result.chunks):
        raise ConsistencyViolation("Chunk map and chunk list differ in size")


def build_chunk_index(chunks: Sequence[Chunk], vectors: np.ndarray) -> HybridIndex:
    if len(chunks) != len(vectors):
        raise ConsistencyViolation(f"{len(chunks)} chunks but {len(vectors)} chunk vectors")
    index = HybridIndex(name="chunks")
    index.build(
        [
            HybridIndexEntry(id=chunk.id, text=chunk.text, vector=vector, metadata=dict(chunk.metadata))
            for chunk, vector in zip(chunks, vectors)
        ]
    )
    return index


def build_document_index(documents: Sequence[Document], vectors: np.ndarray) -> HybridIndex:
    if len(documents) != len(vectors):
        raise ConsistencyViolation(f"{len(documents)} documents but {len(vectors)} document vectors")
    index = HybridIndex(name="documents")
    index.build(
        [
            HybridIndexEntry(id=doc.id, text=doc.text, vector=vector, metadata=dict(doc.metadata))
            for doc, vector in zip(documents, vectors)
        ]
    )
    return index


def merge_cluster_metadata(documents: Sequence[Document], clustering: ClusteringResult) -> list[Document]:
    """New Document objects carrying cluster id, label, probability and keywords."""
    enriched: list[Document] = []
    for row, document in enumerate(documents):
        label = int(clustering.labels[row]) if row < len(clustering.labels) else NOISE_LABEL
        probability = float(clustering.probabilities[row]) if row < len(clustering.probabilities) else 0.0
        metadata = dict(document.metadata)
        metadata["cluster"] = label
        metadata["cluster_label"] = "Noise" if label == NOISE_LABEL else f"Cluster {label}"
        metadata["cluster_probability"] = probability
        keywords = clustering.keywords.get(label) if label != NOISE_LABEL else None
        enriched.append(
            Document(
                id=document.id,
                text=document.text,
                metadata=metadata,
                cluster_keywords=list(keywords.metadata) if keywords else [],
                cluster_keyword_scores=list(keywords.scored) if keywords else [],
                cluster_keywords_viz=list(keywords.viz) if keywords else [],
            )
        )
    return enriched


def _span_sink(sink: ProgressSink, state: PipelineState):
    start, end = _STAGE_SPANS[state]

    def report(stage: str, fraction: float, message: str = "") -> None:
        sink(stage, start + min(1.0, max(0.0, fraction)) * (end - start), message)

    return report


__all__ = [
    "ProcessingOptions",
    "DatasetPipeline",
    "verify_chunk_parents",
    "build_chunk_index",
    "build_document_index",
    "merge_cluster_metadata",
]
