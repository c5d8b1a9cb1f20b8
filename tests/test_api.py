"""Tests for the FastAPI application."""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from localrag.api.app import AppDependencies, create_app
from localrag.config import Settings
from localrag.embeddings import EmbeddingConfig, HashEmbeddingProvider
from localrag.metrics.observability import PipelineMetrics
from localrag.services import GenerationError, GenerationOptions, GenerationResult, TemplateGenerator
from localrag.storage import LocalStore

LEAVE_TEXT = "Employees receive 25 days of annual leave per year under the leave policy."
OPS_TEXT = "Server maintenance happens every Sunday night."


class FailingGenerator:
    provider_id = "broken"

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        raise GenerationError("model offline", provider_id=self.provider_id)


def _dependencies(generator=None, capacity_bytes: int = 8 * 1024 * 1024) -> AppDependencies:
    settings = Settings(environment="test", embedding_dim=32, similarity_threshold=0.0)
    return AppDependencies(
        settings=settings,
        store=LocalStore(capacity_bytes=capacity_bytes),
        embedder=HashEmbeddingProvider(EmbeddingConfig(dim=32)),
        generator=generator or TemplateGenerator(),
        metrics=PipelineMetrics(),
    )


@pytest.fixture()
def client() -> Iterator[TestClient]:
    deps = _dependencies()
    app = create_app(settings=deps.settings, dependencies=deps)
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, name: str, text: str, project: str = "p1"):
    return client.post(f"/projects/{project}/documents", json={"name": name, "text": text})


def test_upload_list_and_delete_documents(client: TestClient) -> None:
    response = _upload(client, "handbook.txt", LEAVE_TEXT)
    assert response.status_code == 201
    body = response.json()
    assert body["created"] is True
    document = body["document"]
    assert document["name"] == "handbook.txt"
    assert document["chunk_count"] == 1
    assert document["embedding_provider"] == "hash"

    again = _upload(client, "handbook.txt", LEAVE_TEXT)
    assert again.status_code == 201
    assert again.json()["created"] is False

    listing = client.get("/projects/p1/documents").json()
    assert [item["document_id"] for item in listing["documents"]] == [document["document_id"]]
    assert client.get("/projects/p2/documents").json()["documents"] == []

    assert client.delete(f"/projects/p1/documents/{document['document_id']}").status_code == 204
    assert client.delete(f"/projects/p1/documents/{document['document_id']}").status_code == 404
    assert client.get("/projects/p1/storage").json()["document_count"] == 0


def test_blank_document_is_unprocessable(client: TestClient) -> None:
    response = _upload(client, "empty.txt", "   ")
    assert response.status_code == 422
    assert "no text" in response.json()["detail"]
    assert "correlation_id" in response.json()


def test_quota_exceeded_maps_to_insufficient_storage() -> None:
    deps = _dependencies(capacity_bytes=2048)
    with TestClient(create_app(settings=deps.settings, dependencies=deps)) as client:
        response = _upload(client, "big.txt", "lorem ipsum " * 500)
        assert response.status_code == 507
        assert client.get("/projects/p1/storage").json()["document_count"] == 0


def test_search_returns_ranked_results(client: TestClient) -> None:
    _upload(client, "handbook.txt", LEAVE_TEXT)
    _upload(client, "ops.txt", OPS_TEXT)

    response = client.post(
        "/projects/p1/search",
        json={"query": "leave policy", "algorithm": "keyword", "similarity_threshold": 0.1},
    )
    assert response.status_code == 200
    results = response.json()["results"]
    assert [result["document_name"] for result in results] == ["handbook.txt"]
    assert results[0]["algorithm"] == "keyword"
    assert results[0]["score"] == pytest.approx(1.0)


def test_query_answers_and_records_chat(client: TestClient) -> None:
    _upload(client, "handbook.txt", LEAVE_TEXT)

    response = client.post("/projects/p1/query", json={"question": "How many days of annual leave?"})
    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "answered"
    assert body["sources"][0]["document_name"] == "handbook.txt"
    assert body["usage"]["model_id"] == "template"

    history = client.get("/projects/p1/chat").json()["messages"]
    assert [message["role"] for message in history] == ["user", "assistant"]
    assert history[1]["sources"]
    assert client.get("/projects/p1/chat", params={"limit": 1}).json()["messages"][0]["role"] == "assistant"

    assert client.delete("/projects/p1/chat").json() == {"removed": 2}
    assert client.get("/projects/p1/chat").json()["messages"] == []


def test_query_on_empty_project_returns_guidance(client: TestClient) -> None:
    body = client.post("/projects/p1/query", json={"question": "Anything?"}).json()
    assert body["state"] == "received"
    assert body["usage"] is None
    assert client.get("/projects/p1/costs").json()["record_count"] == 0


def test_generation_failure_is_reported_in_the_answer() -> None:
    deps = _dependencies(generator=FailingGenerator())
    with TestClient(create_app(settings=deps.settings, dependencies=deps)) as client:
        _upload(client, "handbook.txt", LEAVE_TEXT)
        records_before = client.get("/projects/p1/costs").json()["record_count"]

        body = client.post("/projects/p1/query", json={"question": "What is the leave policy?"}).json()
        assert body["state"] == "generation_failed"
        assert body["error"] == "model offline"
        history = client.get("/projects/p1/chat").json()["messages"]
        assert history[-1]["is_error"] is True
        assert client.get("/projects/p1/costs").json()["record_count"] == records_before


def test_background_job_completes(client: TestClient) -> None:
    response = client.post("/projects/p1/jobs", json={"name": "handbook.txt", "text": LEAVE_TEXT})
    assert response.status_code == 202
    job = response.json()
    assert job["status"] in ("pending", "processing", "completed")

    finished = client.get(f"/projects/p1/jobs/{job['job_id']}", params={"wait": True}).json()
    assert finished["status"] == "completed"
    assert finished["document"]["name"] == "handbook.txt"
    # a finished job is forgotten once its result has been returned
    assert client.get(f"/projects/p1/jobs/{job['job_id']}").status_code == 404
    assert client.get("/projects/p1/jobs/unknown").status_code == 404
    assert client.get(f"/projects/p2/jobs/{job['job_id']}").status_code == 404


def test_storage_eviction_and_costs(client: TestClient) -> None:
    first = _upload(client, "old.txt", LEAVE_TEXT).json()["document"]["document_id"]
    _upload(client, "new.txt", OPS_TEXT)

    storage = client.get("/projects/p1/storage").json()
    assert storage["document_count"] == 2
    assert storage["bytes_used"] + storage["bytes_available"] == storage["capacity_bytes"]

    needed = storage["bytes_available"] + 1
    evicted = client.post("/projects/p1/storage/evict", json={"bytes_needed": needed}).json()
    assert evicted["evicted_document_ids"] == [first]
    assert evicted["storage"]["document_count"] == 1

    costs = client.get("/projects/p1/costs").json()
    assert costs["record_count"] == 4
    assert set(costs["breakdown"]) == {"generation", "embedding", "storage"}
    assert client.delete("/projects/p1/costs").json() == {"removed": 4}
    assert client.get("/projects/p1/costs").json()["record_count"] == 0


def test_budget_update_raises_alerts_once(client: TestClient) -> None:
    status = client.get("/projects/p1/budget").json()
    assert status["monthly_limit"] == 100.0
    assert status["alert_thresholds"] == [60.0, 80.0, 100.0]
    assert status["alerts"] == []

    _upload(client, "handbook.txt", LEAVE_TEXT)
    updated = client.put("/projects/p1/budget", json={"monthly_limit": 0.0000000001}).json()
    assert updated["within_budget"] is False
    assert [alert["threshold"] for alert in updated["alerts"]] == [60.0, 80.0, 100.0]
    assert client.get("/projects/p1/budget").json()["alerts"] == []
    assert client.put("/projects/p1/budget", json={"monthly_limit": -1}).status_code == 422


def test_health_metrics_and_correlation_id(client: TestClient) -> None:
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["environment"] == "test"
    assert client.head("/healthz").status_code == 200
    assert client.get("/livez").json() == {"status": "alive"}

    _upload(client, "handbook.txt", LEAVE_TEXT)
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "localrag_ingestion_duration_seconds" in metrics.text
    assert 'localrag_storage_bytes_used{project_id="p1"}' in metrics.text

    response = client.get("/livez", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Correlation-ID"] == "abc123"
