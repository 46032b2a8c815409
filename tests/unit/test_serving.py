"""Unit tests for the serving layer."""

from __future__ import annotations

import pytest
from conftest import FakeOpenAIClient, FakeVectorIndex, RecordingChatModel, fake_vector, make_embedder
from fastapi.testclient import TestClient

from nexusgov_rag.chat.responder import GroundedResponder
from nexusgov_rag.documents import DocumentStatus
from nexusgov_rag.ingestion.chunker import ChunkingOptions
from nexusgov_rag.ingestion.coordinator import IngestionCoordinator
from nexusgov_rag.ingestion.queue import IngestionQueue
from nexusgov_rag.retrieval.retriever import RetrievalOrchestrator
from nexusgov_rag.serving.app import Services, create_app


def test_health_endpoint() -> None:
    """GET /health should return 200 with status ok."""
    from nexusgov_rag.serving.app import app

    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.fixture()
def services(documents, storage, embedder, index) -> Services:  # noqa: ANN001
    coordinator = IngestionCoordinator(
        documents, storage, embedder, index, chunking=ChunkingOptions(chunk_size=200, chunk_overlap=40)
    )
    retriever = RetrievalOrchestrator(embedder, index)
    return Services(
        documents=documents,
        coordinator=coordinator,
        queue=IngestionQueue(coordinator, max_workers=1),
        retriever=retriever,
        index=index,
        responder=GroundedResponder(retriever, RecordingChatModel()),
    )


@pytest.fixture()
def client(services: Services):
    with TestClient(create_app(services)) as client:
        yield client


class TestProcessDocument:
    def test_success(self, client: TestClient, documents, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        response = client.post("/documents/process", json={"documentId": "doc-1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["documentId"] == "doc-1"
        assert body["stats"]["chunkCount"] == 1
        assert set(body["stats"]) >= {"textLength", "embeddingTokens", "embeddingCost", "chunkingStats"}
        assert documents.get("doc-1").status == DocumentStatus.READY

    def test_missing_document(self, client: TestClient) -> None:
        response = client.post("/documents/process", json={"documentId": "nope"})
        assert response.status_code == 404

    def test_missing_document_id(self, client: TestClient) -> None:
        assert client.post("/documents/process", json={}).status_code == 422

    def test_unsupported_format_is_client_error(self, client: TestClient, make_document) -> None:  # noqa: ANN001
        make_document("doc-1", media_type="application/msword")
        response = client.post("/documents/process", json={"documentId": "doc-1"})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "PROCESSING_ERROR"
        assert body["errorType"] == "UNSUPPORTED_FORMAT"
        assert "application/msword" in body["message"]

    def test_platform_failure_is_server_error(
        self, client: TestClient, index: FakeVectorIndex, make_document  # noqa: ANN001
    ) -> None:
        make_document("doc-1")
        index.fail_writes = True
        response = client.post("/documents/process", json={"documentId": "doc-1"})
        assert response.status_code == 500
        assert response.json()["errorType"] == "VECTOR_WRITE_FAILURE"

    def test_background_mode_returns_job(self, client: TestClient, services: Services, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        response = client.post("/documents/process", json={"documentId": "doc-1", "wait": False})

        assert response.status_code == 202
        job_id = response.json()["id"]
        services.queue.wait(job_id, timeout=10)

        job = client.get(f"/jobs/{job_id}").json()
        assert job["state"] == "DONE"
        assert job["documentId"] == "doc-1"

    def test_unknown_job(self, client: TestClient) -> None:
        assert client.get("/jobs/nope").status_code == 404


class TestRetryAndReprocess:
    def test_retry_requires_error_status(self, client: TestClient, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        client.post("/documents/process", json={"documentId": "doc-1"})
        response = client.post("/documents/doc-1/retry")
        assert response.status_code == 409

    def test_retry_error_document(self, client: TestClient, storage, make_document) -> None:  # noqa: ANN001
        doc = make_document("doc-1", body=None)
        assert client.post("/documents/process", json={"documentId": "doc-1"}).status_code == 500

        storage.files[doc.download_url] = b"Nu finns filen."
        response = client.post("/documents/doc-1/retry")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_reprocess_ready_document(self, client: TestClient, index: FakeVectorIndex, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        client.post("/documents/process", json={"documentId": "doc-1"})
        before = index.count()

        response = client.post("/documents/doc-1/reprocess")
        assert response.status_code == 200
        assert index.count() == before

    def test_reprocess_processing_document_conflicts(self, client: TestClient, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        assert client.post("/documents/doc-1/reprocess").status_code == 409


class TestDeleteVectors:
    def test_delete(self, client: TestClient, documents, index: FakeVectorIndex, make_document) -> None:  # noqa: ANN001
        make_document("doc-1")
        client.post("/documents/process", json={"documentId": "doc-1"})

        response = client.delete("/documents/doc-1/vectors")
        assert response.status_code == 200
        assert response.json() == {"success": True, "documentId": "doc-1"}
        assert index.count(document_id="doc-1") == 0
        assert documents.get("doc-1").vector_count == 0

    def test_index_down(self, client: TestClient, index: FakeVectorIndex) -> None:
        index.unavailable = True
        assert client.delete("/documents/doc-1/vectors").status_code == 503


class TestSearchRag:
    def _seed(self, client: TestClient, make_document) -> None:  # noqa: ANN001
        make_document("doc-1", b"Semesterregler for anstallda i kommunen.")
        make_document("doc-2", b"Semesterregler i en annan organisation.", organization_id="org-2")
        client.post("/documents/process", json={"documentId": "doc-1"})
        client.post("/documents/process", json={"documentId": "doc-2"})

    def test_search(self, client: TestClient, make_document) -> None:  # noqa: ANN001
        self._seed(client, make_document)
        response = client.post(
            "/search/rag",
            json={"query": "semesterregler", "organizationId": "org-1", "userId": "user-1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["query"] == "semesterregler"
        assert [s["source"]["documentId"] for s in body["sources"]] == ["doc-1"]
        assert body["context"].startswith("[Source 1: doc-1.txt]\n")
        assert body["stats"]["resultsCount"] == 1

    def test_no_matches(self, client: TestClient) -> None:
        response = client.post(
            "/search/rag",
            json={"query": "semester", "organizationId": "org-1", "userId": "user-1"},
        )
        assert response.status_code == 200
        assert response.json()["sources"] == []
        assert response.json()["stats"]["topScore"] == 0

    @pytest.mark.parametrize(
        "payload",
        [
            {"organizationId": "org-1", "userId": "user-1"},
            {"query": "semester", "userId": "user-1"},
            {"query": "", "organizationId": "org-1", "userId": "user-1"},
        ],
    )
    def test_missing_fields(self, client: TestClient, payload: dict) -> None:
        assert client.post("/search/rag", json=payload).status_code == 422

    def test_index_unavailable(self, client: TestClient, index: FakeVectorIndex) -> None:
        index.unavailable = True
        response = client.post(
            "/search/rag",
            json={"query": "semester", "organizationId": "org-1", "userId": "user-1"},
        )
        assert response.status_code == 503
        assert response.json()["error"] == "RAG_UNAVAILABLE"
        assert response.json()["sources"] == []

    def test_embedding_failure(self, services: Services, index: FakeVectorIndex) -> None:
        services.retriever = RetrievalOrchestrator(make_embedder(FakeOpenAIClient(fail_on_call=1)), index)
        with TestClient(create_app(services)) as client:
            response = client.post(
                "/search/rag",
                json={"query": "semester", "organizationId": "org-1", "userId": "user-1"},
            )
        assert response.status_code == 502
        assert response.json()["error"] == "SEARCH_ERROR"


_CHAT = {
    "messages": [
        {"role": "system", "content": "Svara kort."},
        {"role": "user", "content": "Vilka semesterregler galler?"},
    ],
    "organizationId": "org-1",
    "userId": "user-1",
}


class TestChatRag:
    def test_answer_with_sources(self, client: TestClient, services: Services, make_document) -> None:  # noqa: ANN001
        make_document("doc-1", b"Semesterregler for anstallda i kommunen.")
        client.post("/documents/process", json={"documentId": "doc-1"})

        response = client.post("/chat/rag", json=_CHAT)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["grounded"] is True
        assert body["message"] == "Ansok hos din chef [Source 1: doc-1.txt]."
        assert [s["source"]["documentId"] for s in body["sources"]] == ["doc-1"]
        assert body["usage"]["total_tokens"] == 132

    def test_turns_reach_the_model_in_order(self, client: TestClient, services: Services) -> None:
        client.post("/chat/rag", json=_CHAT)

        [prompt] = services.responder._chat_model.calls
        assert [m.type for m in prompt] == ["system", "human"]
        assert prompt[-1].content == "Vilka semesterregler galler?"

    def test_no_user_turn(self, client: TestClient) -> None:
        payload = {**_CHAT, "messages": [{"role": "assistant", "content": "Hej!"}]}
        response = client.post("/chat/rag", json=payload)
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_REQUEST"

    def test_empty_conversation(self, client: TestClient) -> None:
        assert client.post("/chat/rag", json={**_CHAT, "messages": []}).status_code == 422

    def test_model_failure(self, services: Services) -> None:
        services.responder = GroundedResponder(services.retriever, RecordingChatModel(fail=True))
        with TestClient(create_app(services)) as client:
            response = client.post("/chat/rag", json=_CHAT)
        assert response.status_code == 500
        assert response.json()["error"] == "CHAT_ERROR"
        assert "model overloaded" in response.json()["message"]

    def test_embedding_failure(self, services: Services, index: FakeVectorIndex) -> None:
        retriever = RetrievalOrchestrator(make_embedder(FakeOpenAIClient(fail_on_call=1)), index)
        services.responder = GroundedResponder(retriever, RecordingChatModel())
        with TestClient(create_app(services)) as client:
            response = client.post("/chat/rag", json=_CHAT)
        assert response.status_code == 502
        assert response.json()["error"] == "SEARCH_ERROR"

    def test_without_chat_model(self, services: Services) -> None:
        services.responder = None
        with TestClient(create_app(services)) as client:
            response = client.post("/chat/rag", json=_CHAT)
        assert response.status_code == 503
        assert response.json()["error"] == "CHAT_UNAVAILABLE"


def test_collection_info(client: TestClient, index: FakeVectorIndex) -> None:
    response = client.get("/collection")
    assert response.status_code == 200
    assert response.json()["vector_size"] == len(fake_vector("x"))
