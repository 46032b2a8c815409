"""FastAPI application exposing ingestion, RAG search and grounded chat as a REST API.

Services are built from settings at startup unless a :class:`Services`
bundle is injected (tests pass in-memory fakes)::

    app = create_app(Services(documents=..., coordinator=..., ...))
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from nexusgov_rag.chat.responder import GroundedResponder
from nexusgov_rag.config import settings
from nexusgov_rag.documents import DocumentStatus, DocumentStore, InMemoryDocumentStore
from nexusgov_rag.errors import (
    DocumentNotFound,
    EmbeddingAPIFailure,
    EmptyExtraction,
    ExtractionFailure,
    InvalidStatusTransition,
    UnsupportedFormat,
    VectorIndexError,
)
from nexusgov_rag.ingestion.coordinator import IngestionCoordinator
from nexusgov_rag.ingestion.embedder import EmbeddingGenerator
from nexusgov_rag.ingestion.queue import IngestAction, IngestionQueue, WorkItem, WorkState
from nexusgov_rag.ingestion.storage import HttpObjectStorage
from nexusgov_rag.retrieval.base import VectorIndexBase
from nexusgov_rag.retrieval.chroma_store import ChromaVectorIndex
from nexusgov_rag.retrieval.retriever import RetrievalOrchestrator, visibility_policy_from_settings
from nexusgov_rag.serving.schemas import (
    ChatRequest,
    ChatResponse,
    ChatTurn,
    DeleteVectorsResponse,
    ErrorResponse,
    ProcessRequest,
    ProcessResponse,
    SearchRequest,
    SearchResponse,
    UnavailableResponse,
)

logger = logging.getLogger(__name__)

# Failures caused by the file itself rather than by the platform.
_CLIENT_ERROR_TYPES = {UnsupportedFormat.code, ExtractionFailure.code, EmptyExtraction.code}


@dataclass
class Services:
    """Everything the routes need, wired once per application."""

    documents: DocumentStore
    coordinator: IngestionCoordinator
    queue: IngestionQueue
    retriever: RetrievalOrchestrator
    index: VectorIndexBase
    responder: GroundedResponder | None = None

    @classmethod
    def from_settings(cls, documents: DocumentStore | None = None) -> Services:
        documents = documents or InMemoryDocumentStore()
        embedder = EmbeddingGenerator()
        index = ChromaVectorIndex.from_settings()
        coordinator = IngestionCoordinator(documents, HttpObjectStorage(), embedder, index)
        retriever = RetrievalOrchestrator(
            embedder,
            index,
            visibility_policy=visibility_policy_from_settings(),
            max_sources=settings.retrieval_max_sources,
            score_threshold=settings.retrieval_score_threshold,
        )
        return cls(
            documents=documents,
            coordinator=coordinator,
            queue=IngestionQueue(
                coordinator,
                max_workers=settings.ingestion_workers,
                max_finished=settings.ingestion_max_finished_items,
            ),
            retriever=retriever,
            index=index,
            responder=GroundedResponder(retriever),
        )


_MESSAGE_TYPES: dict[str, type[BaseMessage]] = {
    "system": SystemMessage,
    "user": HumanMessage,
    "assistant": AIMessage,
}


def _to_message(turn: ChatTurn) -> BaseMessage:
    return _MESSAGE_TYPES[turn.role](content=turn.content)


def _error(status_code: int, error: str, message: str, error_type: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, error_type=error_type)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def _item_response(item: WorkItem) -> JSONResponse:
    """Map a finished (or still running) work item to the process-endpoint contract."""
    if item.state in (WorkState.PENDING, WorkState.RUNNING):
        return JSONResponse(status_code=202, content=item.model_dump(by_alias=True, mode="json"))

    if item.state == WorkState.DONE and item.outcome is not None:
        body = ProcessResponse(document_id=item.document_id, stats=item.outcome.stats)
        return JSONResponse(status_code=200, content=body.model_dump(by_alias=True, mode="json"))

    if item.error_type == DocumentNotFound.code:
        return _error(404, "NOT_FOUND", item.error or "Document not found", item.error_type)
    if item.error_type == InvalidStatusTransition.code:
        return _error(409, "INVALID_STATUS", item.error or "Invalid status", item.error_type)

    status_code = 422 if item.error_type in _CLIENT_ERROR_TYPES else 500
    return _error(status_code, "PROCESSING_ERROR", item.error or "Processing failed", item.error_type)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    ----------
    services:
        Pre-wired services; built from settings at startup when *None*.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        app.state.services = services or Services.from_settings()
        yield
        app.state.services.queue.shutdown(wait=False)

    app = FastAPI(
        title="NexusGov RAG API",
        version="0.1.0",
        description="Document ingestion and tenant-scoped retrieval for grounded chat.",
        lifespan=lifespan,
    )

    def _services(request: Request) -> Services:
        return request.app.state.services

    # ── Routes ────────────────────────────────────────────────────────
    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness check."""
        return {"status": "ok"}

    @app.get("/collection")
    def collection(request: Request):
        """Vector-index statistics (points, vector size, distance)."""
        try:
            return _services(request).index.collection_info()
        except VectorIndexError as exc:
            return _error(503, "RAG_UNAVAILABLE", str(exc), exc.code)

    def _run(request: Request, document_id: str, action: IngestAction, wait: bool) -> JSONResponse:
        svc = _services(request)
        doc = svc.documents.get(document_id)
        if doc is None:
            return _error(404, "NOT_FOUND", f"Document not found: {document_id}", DocumentNotFound.code)
        if action == IngestAction.RETRY and doc.status != DocumentStatus.ERROR:
            return _error(
                409,
                "INVALID_STATUS",
                f"Only documents in ERROR can be retried (status is {doc.status.value})",
                InvalidStatusTransition.code,
            )

        item = svc.queue.submit(document_id, action)
        if wait:
            item = svc.queue.wait(item.id)
        return _item_response(item)

    @app.post("/documents/process")
    def process_document(request: Request, body: ProcessRequest) -> JSONResponse:
        """Run the ingestion pipeline for a freshly uploaded document."""
        return _run(request, body.document_id, IngestAction.INGEST, body.wait)

    @app.post("/documents/{document_id}/retry")
    def retry_document(request: Request, document_id: str, wait: bool = True) -> JSONResponse:
        return _run(request, document_id, IngestAction.RETRY, wait)

    @app.post("/documents/{document_id}/reprocess")
    def reprocess_document(request: Request, document_id: str, wait: bool = True) -> JSONResponse:
        return _run(request, document_id, IngestAction.REPROCESS, wait)

    @app.delete("/documents/{document_id}/vectors")
    def delete_vectors(request: Request, document_id: str):
        """Remove a document's points from the index (used when the file is deleted)."""
        svc = _services(request)
        try:
            svc.index.delete_by_document(document_id)
        except VectorIndexError as exc:
            logger.error("Failed to delete vectors for %s: %s", document_id, exc)
            return _error(503, "RAG_UNAVAILABLE", str(exc), exc.code)
        if svc.documents.get(document_id) is not None:
            svc.documents.update(document_id, vector_count=0)
        return DeleteVectorsResponse(document_id=document_id).model_dump(by_alias=True)

    @app.get("/jobs/{job_id}")
    def get_job(request: Request, job_id: str):
        item = _services(request).queue.get(job_id)
        if item is None:
            return _error(404, "NOT_FOUND", f"Job not found: {job_id}")
        return item.model_dump(by_alias=True, mode="json")

    @app.post("/search/rag")
    def search_rag(request: Request, body: SearchRequest):
        """Retrieve ranked, tenant-scoped sources and the prompt context."""
        svc = _services(request)
        try:
            response = svc.retriever.retrieve(
                body.query,
                body.organization_id,
                body.user_id,
                limit=body.limit,
                visibility=body.visibility,
            )
        except EmbeddingAPIFailure as exc:
            logger.error("RAG search failed: %s", exc)
            return _error(502, "SEARCH_ERROR", str(exc), exc.code)
        except ValueError as exc:
            return _error(422, "INVALID_REQUEST", str(exc))

        if not response.available:
            body_out = UnavailableResponse(
                error="RAG_UNAVAILABLE",
                message=response.error or "Vector search is unavailable",
            )
            return JSONResponse(status_code=503, content=body_out.model_dump(by_alias=True, exclude_none=True))

        return SearchResponse(
            query=body.query,
            sources=response.sources,
            context=response.context,
            stats=response.stats,
        ).model_dump(by_alias=True, mode="json")

    @app.post("/chat/rag")
    def chat_rag(request: Request, body: ChatRequest):
        """Answer the conversation with the organization's documents as context."""
        responder = _services(request).responder
        if responder is None:
            return _error(503, "CHAT_UNAVAILABLE", "No chat model is configured")
        try:
            answer = responder.respond(
                [_to_message(turn) for turn in body.messages],
                body.organization_id,
                body.user_id,
                limit=body.limit,
                visibility=body.visibility,
            )
        except EmbeddingAPIFailure as exc:
            logger.error("RAG search failed: %s", exc)
            return _error(502, "SEARCH_ERROR", str(exc), exc.code)
        except ValueError as exc:
            return _error(422, "INVALID_REQUEST", str(exc))
        except Exception as exc:
            logger.exception("Chat completion failed")
            return _error(500, "CHAT_ERROR", str(exc) or "Chat completion failed")

        return ChatResponse(
            message=answer.answer,
            grounded=answer.grounded,
            sources=answer.sources,
            stats=answer.stats,
            usage=answer.usage,
        ).model_dump(by_alias=True, mode="json")

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run("nexusgov_rag.serving.app:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
