"""Tests for the processing pipeline and the query service."""

from __future__ import annotations

import numpy as np
import pytest

from vectoria.core.config import Settings
from vectoria.core.control import CancellationToken
from vectoria.core.errors import (
    ConsistencyViolation,
    IndexNotBuiltError,
    InputValidationError,
    ProcessingCancelled,
    StageFailure,
)
from vectoria.datasets.dataset import Dataset, PipelineState, get_visualization_data
from vectoria.ingest.chunker import ChunkingOptions
from vectoria.ingest.pipeline import DatasetPipeline, ProcessingOptions
from vectoria.ingest.records import records_to_documents
from vectoria.models.entities import Document
from vectoria.retrieval.search import QueryService


def _pipeline(embedding_service, settings: Settings | None = None, **kwargs) -> DatasetPipeline:
    settings = settings or Settings(umap_n_epochs=40, hdbscan_min_cluster_size=3, hdbscan_min_samples=2)
    return DatasetPipeline(embedding_service, options=ProcessingOptions.from_settings(settings), **kwargs)


@pytest.fixture
def processed(embedding_service, corpus_records):
    dataset = Dataset(name="corpus")
    batch = records_to_documents(corpus_records, text_column="text")
    summary = _pipeline(embedding_service).process_dataset(dataset, batch.documents)
    return dataset, summary


def test_process_publishes_three_tiers(processed) -> None:
    dataset, summary = processed
    artifacts = dataset.require_artifacts()
    assert dataset.state is PipelineState.SAVED
    assert summary.num_documents == 12
    assert artifacts.parent_vectors.shape == (12, 64)
    assert artifacts.chunk_vectors.shape[0] == len(artifacts.chunks) == summary.num_chunks
    assert all(len(chunk.text) >= ChunkingOptions().min_chunk_size for chunk in artifacts.chunks)
    assert artifacts.projection_2d.shape == (12, 2)
    assert artifacts.projection_clustering.shape == (12, 15)
    assert np.isfinite(artifacts.projection_2d).all()
    assert len(artifacts.clustering.labels) == 12
    artifacts.document_index.ensure_consistent()
    artifacts.chunk_index.ensure_consistent()
    assert set(summary.timings) >= {"chunking", "embedding_parent", "indexing", "clustering"}


def test_documents_carry_cluster_metadata(processed) -> None:
    dataset, _ = processed
    artifacts = dataset.require_artifacts()
    for row, document in enumerate(artifacts.documents):
        label = int(artifacts.clustering.labels[row])
        assert document.metadata["cluster"] == label
        assert document.metadata["cluster_label"] == ("Noise" if label == -1 else f"Cluster {label}")
        if label == -1:
            assert document.cluster_keywords == []
    hit = artifacts.document_index.search_lexical("telescopes", k=1)[0]
    assert "cluster" in hit.metadata


def test_chunks_map_back_to_parents(processed) -> None:
    dataset, _ = processed
    artifacts = dataset.require_artifacts()
    doc_ids = {doc.id for doc in artifacts.documents}
    assert set(artifacts.chunk_to_parent) == {chunk.id for chunk in artifacts.chunks}
    assert set(artifacts.chunk_to_parent.values()) <= doc_ids


def test_duplicates_are_dropped_before_processing(embedding_service) -> None:
    docs = [Document(id=f"doc_{i}", text="The same paragraph about lighthouses.") for i in range(3)]
    dataset = Dataset()
    summary = _pipeline(embedding_service).process_dataset(dataset, docs)
    assert summary.num_documents == 1
    assert summary.duplicate_count == 2
    assert any("duplicate" in warning for warning in summary.warnings)
    assert dataset.require_artifacts().clustering.labels.tolist() == [-1]


def test_single_document_with_unit_cluster_size(embedding_service) -> None:
    settings = Settings(umap_n_epochs=20, hdbscan_min_cluster_size=1, hdbscan_min_samples=1)
    dataset = Dataset()
    summary = _pipeline(embedding_service, settings).process_dataset(
        dataset, [Document(id="doc_0", text="A single note about lighthouse keepers.")]
    )
    assert summary.num_documents == 1
    assert dataset.state is PipelineState.SAVED
    assert dataset.require_artifacts().clustering.labels.tolist() == [-1]


def test_rejects_input_without_text(embedding_service) -> None:
    with pytest.raises(InputValidationError):
        _pipeline(embedding_service).process_dataset(Dataset(), [Document(id="a", text="  ")])


def test_stage_failure_keeps_previous_snapshot(embedding_service, corpus_records) -> None:
    dataset = Dataset()
    documents = records_to_documents(corpus_records, text_column="text").documents
    _pipeline(embedding_service).process_dataset(dataset, documents)
    previous = dataset.require_artifacts()

    class Exploding:
        def cluster(self, *args, **kwargs):
            raise RuntimeError("boom")

    with pytest.raises(StageFailure) as excinfo:
        _pipeline(embedding_service, clusterer=Exploding()).process_dataset(dataset, documents)
    assert excinfo.value.stage == "clustering"
    assert "clustering" in str(excinfo.value)
    assert dataset.artifacts is previous
    assert dataset.state is PipelineState.SAVED


def test_failure_on_first_run_leaves_dataset_empty(embedding_service, corpus_records) -> None:
    class Exploding:
        def cluster(self, *args, **kwargs):
            raise RuntimeError("boom")

    dataset = Dataset()
    documents = records_to_documents(corpus_records, text_column="text").documents
    with pytest.raises(StageFailure):
        _pipeline(embedding_service, clusterer=Exploding()).process_dataset(dataset, documents)
    assert dataset.state is PipelineState.EMPTY
    with pytest.raises(IndexNotBuiltError):
        dataset.require_artifacts()


def test_cancellation_publishes_nothing(embedding_service, corpus_records) -> None:
    dataset = Dataset()
    documents = records_to_documents(corpus_records, text_column="text").documents
    token = CancellationToken()
    stages = []

    def progress(stage: str, fraction: float, message: str = "") -> None:
        stages.append(stage)
        if stage == "reducing_clustering":
            token.cancel()

    with pytest.raises(ProcessingCancelled):
        _pipeline(embedding_service).process_dataset(dataset, documents, progress=progress, cancel=token)
    assert dataset.artifacts is None
    assert "clustering" not in stages


def test_progress_reports_every_stage(embedding_service, corpus_records) -> None:
    events = []
    documents = records_to_documents(corpus_records, text_column="text").documents
    _pipeline(embedding_service).process_dataset(
        Dataset(), documents, progress=lambda stage, fraction, message="": events.append((stage, fraction))
    )
    stages = [stage for stage, _ in events]
    assert stages[0] == "chunking"
    assert stages[-1] == "saved"
    assert events[-1][1] == 1.0
    assert {"embedding_parent", "embedding_chunk", "reducing_visualization", "clustering"} <= set(stages)
    assert all(0.0 <= fraction <= 1.0 for _, fraction in events)


def test_visualization_data_is_normalized(processed) -> None:
    dataset, _ = processed
    data = get_visualization_data(dataset)
    assert len(data["points"]) == 12
    assert all(0.0 <= point["x"] <= 1.0 and 0.0 <= point["y"] <= 1.0 for point in data["points"])
    assert data["stats"]["num_noise"] + sum(data["stats"]["cluster_sizes"].values()) == 12


def _service(embedding_service) -> QueryService:
    return QueryService(Settings(), embedding_service)


def test_keyword_and_semantic_search(processed, embedding_service) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    keyword = service.search(dataset, "dividends portfolio", search_type="keyword", k=3)
    assert keyword
    assert all("Investors" in hit.text for hit in keyword)
    semantic = service.search(dataset, "bread ovens and sauces", search_type="semantic", k=3)
    assert len(semantic) == 3
    assert semantic[0].score >= semantic[-1].score


def test_ask_question_returns_cited_answer(processed, embedding_service) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    result = service.ask_question(dataset, "What do astronomers measure with telescopes?")
    assert result.answer.startswith("Based on the provided documents")
    assert result.sources
    assert not result.was_stopped
    metrics = result.retrieval_metrics
    assert metrics["fusion_method"] == "weighted_rrf"
    assert metrics["parent_count"] == len(result.sources)
    assert metrics["scope_size"] is None
    assert service.history(dataset.id)[-1]["question"].startswith("What do astronomers")


def test_scoped_question_only_uses_scope(processed, embedding_service) -> None:
    dataset, _ = processed
    scope = ["doc_4", "doc_5"]
    result = _service(embedding_service).ask_question(dataset, "bread flour", scope=scope, vector_weight=0.0)
    assert {source["parent_id"] for source in result.sources} <= set(scope)
    assert result.retrieval_metrics["fusion_method"] == "bm25_only"
    assert result.retrieval_metrics["scope_size"] == 2


def test_scope_without_matching_chunks_falls_back_to_documents(processed, embedding_service) -> None:
    dataset, _ = processed
    result = _service(embedding_service).ask_question(
        dataset, "zzzz unmatched words", scope=["doc_0"], vector_weight=0.0
    )
    assert result.retrieval_metrics.get("fallback") == "parent_scope"
    assert all(source["id"] == "doc_0" for source in result.sources)


def test_stream_stops_when_dataset_is_reprocessed(processed, embedding_service, corpus_records) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    stream = service.stream_question(dataset, "What do investors compare?")
    tokens = iter(stream)
    first = next(tokens)
    assert first
    dataset.start_run()
    rest = list(tokens)
    assert rest == []
    assert stream.result.was_stopped
    assert stream.result.answer == ""


def test_failed_rerun_keeps_previous_snapshot_answerable(processed, embedding_service, corpus_records) -> None:
    dataset, _ = processed
    previous = dataset.require_artifacts()

    class Exploding:
        def cluster(self, *args, **kwargs):
            raise RuntimeError("boom")

    documents = records_to_documents(corpus_records, text_column="text").documents
    with pytest.raises(StageFailure):
        _pipeline(embedding_service, clusterer=Exploding()).process_dataset(dataset, documents)
    assert dataset.artifacts is previous

    service = _service(embedding_service)
    result = service.ask_question(dataset, "What do bakers do?")
    assert not result.was_stopped
    assert result.answer
    assert result.dataset_version == previous.version
    streamed = service.stream_question(dataset, "What do bakers do?")
    assert "".join(streamed)
    assert not streamed.result.was_stopped


def test_question_asked_during_a_run_is_answered(processed, embedding_service) -> None:
    dataset, _ = processed
    dataset.start_run()
    result = _service(embedding_service).ask_question(dataset, "What do investors compare?")
    assert not result.was_stopped
    assert result.answer


def test_ask_without_stream_result_raises(processed, embedding_service, monkeypatch: pytest.MonkeyPatch) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    monkeypatch.setattr(service, "_generate", lambda *args, **kwargs: iter(()))
    with pytest.raises(ConsistencyViolation):
        service.ask_question(dataset, "What do bakers do?")


def test_cancel_stops_active_stream(processed, embedding_service) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    stream = service.stream_question(dataset, "What do bakers do?")
    tokens = iter(stream)
    next(tokens)
    assert service.cancel(dataset.id) == 1
    assert list(tokens) == []
    assert stream.result.was_stopped
    assert service.cancel(dataset.id) == 0


def test_full_stream_matches_single_shot(processed, embedding_service) -> None:
    dataset, _ = processed
    service = _service(embedding_service)
    stream = service.stream_question(dataset, "What do bakers do?")
    text = "".join(stream)
    single = service.ask_question(dataset, "What do bakers do?")
    assert stream.result.answer == text.strip() == single.answer


def test_unprocessed_dataset_cannot_be_queried(embedding_service) -> None:
    with pytest.raises(IndexNotBuiltError):
        _service(embedding_service).search(Dataset(), "anything")
