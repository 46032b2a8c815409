"""Shared pytest configuration, fakes and fixtures."""

from __future__ import annotations

import math
import re
import threading
import zlib
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from langchain_core.messages import AIMessage, BaseMessage

from nexusgov_rag.documents import Document, InMemoryDocumentStore, Visibility
from nexusgov_rag.errors import DownloadFailure, SearchFailure, VectorIndexUnavailable, VectorWriteFailure
from nexusgov_rag.ingestion.embedder import EmbeddingGenerator
from nexusgov_rag.ingestion.storage import ObjectStorage
from nexusgov_rag.resilience import CircuitBreaker, RetryPolicy
from nexusgov_rag.retrieval.base import VectorIndexBase
from nexusgov_rag.retrieval.models import MetadataFilter, SearchResult, VectorPoint

DIM = 64


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ── Embeddings ──────────────────────────────────────────────────────────


def fake_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic bag-of-words vector; texts sharing words point the same way."""
    vec = [0.0] * dim
    for word in re.findall(r"\w+", text.lower()):
        vec[zlib.crc32(word.encode()) % dim] += 1.0
    vec[-1] += 0.1  # never the zero vector
    return vec


class FakeEmbeddingsAPI:
    """Stands in for ``openai.OpenAI().embeddings``."""

    def __init__(self, dim: int = DIM, fail_on_call: int | None = None) -> None:
        self.dim = dim
        self.fail_on_call = fail_on_call
        self.calls: list[list[str]] = []

    def create(self, *, model: str, input: str | list[str]) -> Any:  # noqa: A002
        texts = [input] if isinstance(input, str) else list(input)
        self.calls.append(texts)
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RuntimeError("upstream exploded")
        data = [SimpleNamespace(index=i, embedding=fake_vector(t, self.dim)) for i, t in enumerate(texts)]
        # Upstream does not promise ordering; the generator sorts by index.
        return SimpleNamespace(
            data=list(reversed(data)),
            usage=SimpleNamespace(total_tokens=sum(math.ceil(len(t) / 4) for t in texts)),
        )


class FakeOpenAIClient:
    def __init__(self, **kwargs: Any) -> None:
        self.embeddings = FakeEmbeddingsAPI(**kwargs)


def no_retry() -> RetryPolicy:
    return RetryPolicy(attempts=1, backoff_min=0, backoff_max=0)


def make_embedder(client: Any | None = None, **kwargs: Any) -> EmbeddingGenerator:
    return EmbeddingGenerator(
        client or FakeOpenAIClient(),
        model="test-embedding",
        retry=no_retry(),
        breaker=CircuitBreaker("test", failure_threshold=1000),
        **kwargs,
    )


# ── Vector index ────────────────────────────────────────────────────────


def _matches(payload: dict[str, Any], filters: list[MetadataFilter]) -> bool:
    for f in filters:
        if f.operator == "or":
            if not any(_matches(payload, group) for group in f.value):
                return False
        elif f.operator == "eq":
            if payload.get(f.field) != f.value:
                return False
        elif f.operator == "in":
            if payload.get(f.field) not in f.value:
                return False
        else:
            raise ValueError(f.operator)
    return True


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return dot / (na * nb) if na and nb else 0.0


class FakeVectorIndex(VectorIndexBase):
    """Brute-force in-memory index honoring the same filter semantics as Chroma."""

    def __init__(self, vector_size: int = DIM) -> None:
        super().__init__("test-collection", vector_size)
        self._points: dict[str, VectorPoint] = {}
        self._lock = threading.Lock()
        self.unavailable = False
        self.fail_writes = False
        self.fail_search = False
        self.last_filters: list[MetadataFilter] | None = None
        self.deleted: list[str] = []

    def _check(self) -> None:
        if self.unavailable:
            raise VectorIndexUnavailable("index is down")

    def ensure_collection(self) -> None:
        self._check()

    def upsert(self, points: list[VectorPoint]) -> None:
        self._check()
        if self.fail_writes:
            raise VectorWriteFailure("disk full")
        self.validate_points(points)
        with self._lock:
            for p in points:
                self._points[p.id] = p

    def delete_by_document(self, document_id: str) -> None:
        self._check()
        self.deleted.append(document_id)
        with self._lock:
            self._points = {k: p for k, p in self._points.items() if p.payload.document_id != document_id}

    def count(self, *, organization_id: str | None = None, document_id: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for p in self._points.values()
                if (organization_id is None or p.payload.organization_id == organization_id)
                and (document_id is None or p.payload.document_id == document_id)
            )

    def collection_info(self) -> dict[str, Any]:
        self._check()
        return {"name": self.collection_name, "points_count": self.count(), "vector_size": self.vector_size}

    def health_check(self) -> bool:
        return not self.unavailable

    def _query(self, query_vector: list[float], filters: list[MetadataFilter], limit: int) -> list[SearchResult]:
        self._check()
        if self.fail_search:
            raise SearchFailure("bad query")
        self.last_filters = filters
        with self._lock:
            hits = [
                SearchResult(id=p.id, score=_cosine(query_vector, p.vector), payload=p.payload)
                for p in self._points.values()
                if _matches(p.payload.model_dump(by_alias=True, mode="json"), filters)
            ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]


# ── Object storage ─────────────────────────────────────────────────────


class FakeStorage(ObjectStorage):
    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files = dict(files or {})
        self.downloads: list[str] = []
        self.before_download: Callable[[str], None] | None = None

    def download(self, url: str) -> bytes:
        self.downloads.append(url)
        if self.before_download is not None:
            self.before_download(url)
        try:
            return self.files[url]
        except KeyError:
            raise DownloadFailure(f"Failed to download file: 404 for {url}") from None


# ── Chat model ──────────────────────────────────────────────────────────


class RecordingChatModel:
    """Stands in for a LangChain chat model; records every prompt it receives."""

    def __init__(self, reply: str = "Ansok hos din chef [Source 1: doc-1.txt].", fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: list[list[BaseMessage]] = []

    def invoke(self, messages: list[BaseMessage]) -> AIMessage:
        self.calls.append(list(messages))
        if self.fail:
            raise RuntimeError("model overloaded")
        return AIMessage(
            content=self.reply,
            usage_metadata={"input_tokens": 120, "output_tokens": 12, "total_tokens": 132},
        )


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
def embeddings_client() -> FakeOpenAIClient:
    return FakeOpenAIClient()


@pytest.fixture()
def embedder(embeddings_client: FakeOpenAIClient) -> EmbeddingGenerator:
    return make_embedder(embeddings_client)


@pytest.fixture()
def index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def make_document(documents: InMemoryDocumentStore, storage: FakeStorage) -> Callable[..., Document]:
    """Register a document (and its bytes in storage) and return it."""

    def _make(
        doc_id: str = "doc-1",
        body: bytes | None = b"Semesterregler for anstallda.\n\nLedighet ansoks hos chefen.",
        *,
        organization_id: str = "org-1",
        uploaded_by: str = "user-1",
        media_type: str = "text/plain",
        visibility: Visibility = Visibility.GLOBAL,
        **fields: Any,
    ) -> Document:
        url = f"https://storage.test/{doc_id}"
        if body is not None:
            storage.files[url] = body
        doc = Document(
            id=doc_id,
            organization_id=organization_id,
            uploaded_by=uploaded_by,
            file_name=f"{doc_id}.txt",
            media_type=media_type,
            download_url=url,
            file_size=len(body or b""),
            visibility=visibility,
            **fields,
        )
        return documents.add(doc)

    return _make
