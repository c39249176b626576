"""Tests for export/import and the saved-dataset registry."""

from __future__ import annotations

import numpy as np
import pytest

from vectoria.core.config import Settings
from vectoria.core.errors import DatasetNotFoundError, ImportFormatError
from vectoria.datasets.dataset import Dataset, PipelineState
from vectoria.db.blobs import InMemoryBlobStore, SQLiteBlobStore
from vectoria.db.sqlite import SQLiteDatabase
from vectoria.ingest.pipeline import DatasetPipeline, ProcessingOptions
from vectoria.ingest.records import records_to_documents
from vectoria.storage.registry import DatasetRegistry
from vectoria.storage.serialization import EXPORT_SCHEMA, dumps, export_dataset, import_dataset, loads


@pytest.fixture
def processed(embedding_service, corpus_records) -> Dataset:
    settings = Settings(umap_n_epochs=40, hdbscan_min_cluster_size=3, hdbscan_min_samples=2)
    dataset = Dataset(name="corpus")
    documents = records_to_documents(corpus_records, text_column="text").documents
    DatasetPipeline(embedding_service, options=ProcessingOptions.from_settings(settings)).process_dataset(
        dataset, documents
    )
    return dataset


def test_export_sections(processed: Dataset) -> None:
    payload = export_dataset(processed)
    assert payload["metadata"]["schema"] == EXPORT_SCHEMA
    assert payload["metadata"]["num_documents"] == 12
    assert len(payload["embeddings"]["parent"]["vectors"]) == 12
    assert payload["embeddings"]["parent"]["mode"] == "query"
    assert payload["embeddings"]["chunks"]["mode"] == "passage"
    assert len(payload["chunks"]) == len(payload["embeddings"]["chunks"]["vectors"])
    assert len(payload["visualization"]["clusters"]) == 12
    assert all(isinstance(key, str) for key in payload["visualization"]["cluster_keywords"])


def test_round_trip_preserves_tiers(processed: Dataset) -> None:
    restored = import_dataset(loads(dumps(export_dataset(processed))))
    original = processed.require_artifacts()
    artifacts = restored.require_artifacts()

    assert restored.id == processed.id
    assert restored.state is PipelineState.SAVED
    assert [doc.id for doc in artifacts.documents] == [doc.id for doc in original.documents]
    assert [chunk.id for chunk in artifacts.chunks] == [chunk.id for chunk in original.chunks]
    assert artifacts.chunk_to_parent == original.chunk_to_parent
    assert np.allclose(artifacts.parent_vectors, original.parent_vectors, atol=1e-6)
    assert np.allclose(artifacts.projection_2d, original.projection_2d)
    assert artifacts.clustering.labels.tolist() == original.clustering.labels.tolist()
    assert not artifacts.clustering.invoked
    artifacts.chunk_index.ensure_consistent()
    hits = artifacts.document_index.search_lexical("telescopes galaxies", k=3)
    assert hits and all("Telescopes" in hit.text for hit in hits)


def test_import_overrides_identity(processed: Dataset) -> None:
    restored = import_dataset(export_dataset(processed), dataset_id="copy", name="Copy")
    assert restored.id == "copy"
    assert restored.name == "Copy"


def test_import_rejects_missing_sections(processed: Dataset) -> None:
    payload = export_dataset(processed)
    del payload["embeddings"]
    with pytest.raises(ImportFormatError):
        import_dataset(payload)


def test_import_rejects_wrong_schema_and_counts(processed: Dataset) -> None:
    payload = export_dataset(processed)
    payload["metadata"]["schema"] = "flat-v0"
    with pytest.raises(ImportFormatError):
        import_dataset(payload)

    payload = export_dataset(processed)
    payload["embeddings"]["parent"]["vectors"] = payload["embeddings"]["parent"]["vectors"][:-1]
    with pytest.raises(ImportFormatError):
        import_dataset(payload)

    payload = export_dataset(processed)
    del payload["chunks"][0]["chunk_id"]
    with pytest.raises(ImportFormatError):
        import_dataset(payload)


def test_loads_rejects_garbage() -> None:
    with pytest.raises(ImportFormatError):
        loads(b"{not json")
    with pytest.raises(ImportFormatError):
        loads(b"[1, 2, 3]")


def test_missing_chunk_map_is_rebuilt(processed: Dataset) -> None:
    payload = export_dataset(processed)
    expected = dict(payload["embeddings"]["chunk_map"])
    payload["embeddings"]["chunk_map"] = {}
    restored = import_dataset(payload)
    assert restored.require_artifacts().chunk_to_parent == expected


def test_export_without_chunks_uses_documents(processed: Dataset) -> None:
    payload = export_dataset(processed)
    payload["chunks"] = []
    restored = import_dataset(payload).require_artifacts()
    assert len(restored.chunks) == 12
    assert {chunk.parent_id for chunk in restored.chunks} == {doc.id for doc in restored.documents}
    assert restored.chunk_vectors.shape == restored.parent_vectors.shape
    assert any("single chunks" in warning for warning in restored.summary.warnings)


def test_missing_projection_is_placed_at_origin(processed: Dataset) -> None:
    payload = export_dataset(processed)
    del payload["visualization"]
    restored = import_dataset(payload).require_artifacts()
    assert restored.projection_2d.shape == (12, 2)
    assert not restored.projection_2d.any()
    assert restored.clustering.labels.tolist() == [-1] * 12


def test_bad_projection_shape_rejected(processed: Dataset) -> None:
    payload = export_dataset(processed)
    payload["visualization"]["projection_2d"] = [[0.0, 0.0, 0.0]] * 12
    with pytest.raises(ImportFormatError):
        import_dataset(payload)


def test_sqlite_blob_store(tmp_path) -> None:
    store = SQLiteBlobStore(SQLiteDatabase(tmp_path / "blobs.db"))
    store.put("ns", "a", b"one")
    store.put("ns", "a", b"two")
    store.put("ns", "b", b"three")
    store.put("other", "c", b"four")
    assert store.get("ns", "a") == b"two"
    assert store.get("ns", "missing") is None
    assert store.keys("ns") == ["a", "b"]
    assert store.delete("ns", "a")
    assert not store.delete("ns", "a")
    assert store.keys("ns") == ["b"]


@pytest.mark.parametrize("in_sqlite", [True, False])
def test_registry_save_load_delete(processed: Dataset, in_sqlite: bool) -> None:
    store = SQLiteBlobStore(SQLiteDatabase(":memory:")) if in_sqlite else InMemoryBlobStore()
    registry = DatasetRegistry(store)
    entry = registry.save(processed)
    assert entry["id"] == processed.id
    assert processed.id in registry
    assert [item["id"] for item in registry.list()] == [processed.id]

    loaded = registry.load(processed.id)
    assert loaded.id == processed.id
    assert len(loaded.require_artifacts().documents) == 12

    assert registry.delete(processed.id)
    assert processed.id not in registry
    assert registry.list() == []
    with pytest.raises(DatasetNotFoundError):
        registry.load(processed.id)
