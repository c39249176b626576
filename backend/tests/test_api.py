"""API integration tests."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from vectoria.api import dependencies as deps
from vectoria.app import create_app
from vectoria.ingest.pipeline import DatasetPipeline, ProcessingOptions


@pytest.fixture
def client() -> TestClient:
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def dataset_id(client: TestClient, corpus_records: list[dict]) -> str:
    resp = client.post("/datasets", json={"records": corpus_records, "name": "corpus"})
    assert resp.status_code == 200, resp.text
    return resp.json()["dataset"]["id"]


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_process_and_describe(client: TestClient, corpus_records: list[dict]) -> None:
    records = corpus_records + [{"text": "   ", "topic": "blank"}, dict(corpus_records[0])]
    resp = client.post("/datasets", json={"records": records, "dataset_id": "mixed"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["dataset"]["id"] == "mixed"
    assert body["dataset"]["state"] == "saved"
    assert body["summary"]["num_documents"] == 12
    assert body["summary"]["empty_row_count"] == 1
    assert body["summary"]["duplicate_count"] == 1

    listing = client.get("/datasets").json()
    assert [item["id"] for item in listing["open"]] == ["mixed"]
    assert listing["saved"] == []
    assert client.get("/datasets/mixed").json()["num_documents"] == 12


def test_missing_text_column_is_rejected(client: TestClient) -> None:
    resp = client.post("/datasets", json={"records": [{"body": "hello"}], "text_column": "text"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "InputValidationError"


def test_failed_first_run_leaves_no_dataset(corpus_records: list[dict]) -> None:
    class Exploding:
        def cluster(self, *args, **kwargs):
            raise RuntimeError("boom")

    app = create_app()
    app.dependency_overrides[deps.get_pipeline] = lambda: DatasetPipeline(
        embedding_service=deps.get_embedding_service(),
        options=ProcessingOptions.from_settings(deps.get_app_settings()),
        clusterer=Exploding(),
    )
    with TestClient(app) as client:
        resp = client.post("/datasets", json={"records": corpus_records, "dataset_id": "broken"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "StageFailure"
        assert client.get("/datasets/broken").status_code == 404
        assert client.post("/datasets/broken/search", json={"query": "bread"}).status_code == 404
        assert client.get("/datasets").json()["open"] == []


def test_unknown_dataset_is_404(client: TestClient) -> None:
    assert client.get("/datasets/nope").status_code == 404
    assert client.post("/datasets/nope/search", json={"query": "x"}).status_code == 404
    assert client.delete("/datasets/nope").status_code == 404


def test_search_endpoints(client: TestClient, dataset_id: str) -> None:
    resp = client.post(f"/datasets/{dataset_id}/search", json={"query": "bond yields", "k": 3})
    assert resp.status_code == 200
    results = resp.json()["results"]
    assert results
    assert all(item["metadata"]["topic"] == "finance" for item in results)

    resp = client.post(
        f"/datasets/{dataset_id}/search", json={"query": "galaxies", "search_type": "semantic", "k": 2}
    )
    assert resp.status_code == 200
    assert resp.json()["search_type"] == "semantic"


def test_ask_json_and_history(client: TestClient, dataset_id: str) -> None:
    resp = client.post(f"/datasets/{dataset_id}/ask", json={"question": "How do bakers prepare bread?"})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["answer"]
    assert body["sources"]
    assert body["retrieval_metrics"]["fusion_method"] in {"weighted_rrf", "vector_only", "bm25_only"}
    assert not body["was_stopped"]

    history = client.get(f"/datasets/{dataset_id}/history").json()
    assert history[-1]["question"] == "How do bakers prepare bread?"
    assert client.delete(f"/datasets/{dataset_id}/history").json() == {"ok": True}
    assert client.get(f"/datasets/{dataset_id}/history").json() == []


def test_ask_stream(client: TestClient, dataset_id: str) -> None:
    resp = client.post(
        f"/datasets/{dataset_id}/ask", json={"question": "What do astronomers measure?", "stream": True}
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text.startswith("Based on the provided documents")


def test_cancel_without_active_answers(client: TestClient, dataset_id: str) -> None:
    resp = client.post(f"/datasets/{dataset_id}/ask/cancel")
    assert resp.json() == {"dataset_id": dataset_id, "cancelled": 0}


def test_visualization(client: TestClient, dataset_id: str) -> None:
    data = client.get(f"/datasets/{dataset_id}/visualization").json()
    assert len(data["points"]) == 12
    assert {"x", "y", "cluster", "probability", "keywords"} <= set(data["points"][0])
    assert data["stats"]["num_noise"] + sum(data["stats"]["cluster_sizes"].values()) == 12


def test_export_import_and_save(client: TestClient, dataset_id: str) -> None:
    exported = client.get(f"/datasets/{dataset_id}/export")
    assert exported.status_code == 200
    payload = exported.json()
    assert payload["metadata"]["num_documents"] == 12

    assert client.delete(f"/datasets/{dataset_id}").json()["deleted"] == 1
    imported = client.post("/datasets/import?persist=true", json=payload)
    assert imported.status_code == 200, imported.text
    assert imported.json()["id"] == dataset_id

    listing = client.get("/datasets").json()
    assert [item["id"] for item in listing["saved"]] == [dataset_id]
    resp = client.post(f"/datasets/{dataset_id}/search", json={"query": "dividends"})
    assert resp.json()["results"]


def test_saved_dataset_is_loaded_on_demand(client: TestClient, corpus_records: list[dict]) -> None:
    from vectoria.api import dependencies as deps

    resp = client.post("/datasets", json={"records": corpus_records, "dataset_id": "kept", "persist": True})
    assert resp.status_code == 200
    deps.get_workspace().remove("kept")
    assert client.get("/datasets/kept").json()["num_documents"] == 12


def test_import_rejects_bad_payload(client: TestClient) -> None:
    resp = client.post("/datasets/import", json={"metadata": {}})
    assert resp.status_code == 400
    assert resp.json()["error"] == "ImportFormatError"


def test_status_and_metrics(client: TestClient, dataset_id: str) -> None:
    status = client.get("/status").json()
    assert status["open_datasets"] == 1
    assert status["generation_backend"] == "template"
    client.post(f"/datasets/{dataset_id}/search", json={"query": "ovens"})
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "vectoria_requests_total" in metrics.text
