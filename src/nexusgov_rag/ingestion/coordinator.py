"""Ingestion pipeline coordinator — one document from upload to READY.

Steps run strictly in order, each a blocking call:

    fetch metadata → check format → download → extract → chunk
        → embed (all chunks) → ensure collection → delete old points
        → upsert → mark READY

Any failure stops the pipeline, removes the document's points from the
index (best effort), and records ``ERROR`` with the failure message on
the document, so an ``ERROR`` document is never searchable.
Taxonomy errors never escape :meth:`IngestionCoordinator.ingest`; the
caller gets an :class:`IngestionOutcome` instead.  Only caller mistakes
(unknown document, illegal status transition) are raised.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from nexusgov_rag.documents import Document, DocumentStatus, DocumentStore, check_transition
from nexusgov_rag.errors import (
    DocumentNotFound,
    EmptyExtraction,
    IngestionCancelled,
    InvalidStatusTransition,
    RAGError,
    UnsupportedFormat,
    VectorIndexError,
)
from nexusgov_rag.ingestion.chunker import (
    Chunk,
    ChunkingOptions,
    ChunkingStats,
    chunk_text,
    get_chunking_stats,
)
from nexusgov_rag.ingestion.embedder import EmbeddingGenerator, calculate_embedding_cost
from nexusgov_rag.ingestion.extractor import ExtractorRegistry, default_registry
from nexusgov_rag.ingestion.storage import ObjectStorage
from nexusgov_rag.retrieval.base import VectorIndexBase
from nexusgov_rag.retrieval.models import PointPayload, VectorPoint, point_id

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked at every blocking boundary."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise IngestionCancelled()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IngestionStats(_CamelModel):
    text_length: int
    chunk_count: int
    embedding_tokens: int
    embedding_cost: float
    chunking_stats: ChunkingStats


class IngestionOutcome(_CamelModel):
    document_id: str
    success: bool
    status: DocumentStatus
    stats: IngestionStats | None = None
    error: str | None = None
    error_type: str | None = None


class IngestionCoordinator:
    """Sequences extraction, chunking, embedding and indexing for one document.

    Parameters
    ----------
    documents:
        Metadata store holding the :class:`~nexusgov_rag.documents.Document` records.
    storage:
        Object storage the file bytes are downloaded from.
    embedder:
        Batched embedding client.
    index:
        The vector index; this coordinator is its only writer.
    extractors:
        Format registry; defaults to :func:`default_registry`.
    chunking:
        Chunk size / overlap settings; defaults to the configured values.
    cost_fn:
        Token count → cost in the reporting currency.
    """

    def __init__(
        self,
        documents: DocumentStore,
        storage: ObjectStorage,
        embedder: EmbeddingGenerator,
        index: VectorIndexBase,
        *,
        extractors: ExtractorRegistry | None = None,
        chunking: ChunkingOptions | None = None,
        cost_fn: Callable[[int], float] = calculate_embedding_cost,
    ) -> None:
        self._documents = documents
        self._storage = storage
        self._embedder = embedder
        self._index = index
        self._extractors = extractors or default_registry()
        self._chunking = chunking or ChunkingOptions.from_settings()
        self._cost_fn = cost_fn

    # -- public API -----------------------------------------------------------

    def ingest(self, document_id: str, cancel: CancellationToken | None = None) -> IngestionOutcome:
        """Process a freshly uploaded (``PROCESSING``) document."""
        doc = self._load(document_id)
        if doc.status != DocumentStatus.PROCESSING:
            # READY/ERROR documents go through reprocess() / retry().
            raise InvalidStatusTransition(document_id, doc.status.value, DocumentStatus.PROCESSING.value)
        return self._run(doc, cancel or CancellationToken())

    def retry(self, document_id: str, cancel: CancellationToken | None = None) -> IngestionOutcome:
        """Re-run the full pipeline for an ``ERROR`` document."""
        doc = self._load(document_id)
        if doc.status != DocumentStatus.ERROR:
            raise InvalidStatusTransition(document_id, doc.status.value, DocumentStatus.PROCESSING.value)
        doc = self._begin(doc, explicit=False)
        return self._run(doc, cancel or CancellationToken())

    def reprocess(self, document_id: str, cancel: CancellationToken | None = None) -> IngestionOutcome:
        """Explicitly re-run the pipeline for a ``READY`` or ``ERROR`` document."""
        doc = self._begin(self._load(document_id), explicit=True)
        return self._run(doc, cancel or CancellationToken())

    # -- pipeline -------------------------------------------------------------

    def _run(self, doc: Document, cancel: CancellationToken) -> IngestionOutcome:
        logger.info("Processing document: %s (%s, %s)", doc.id, doc.file_name, doc.media_type)
        t0 = time.monotonic()
        index_touched = False
        try:
            cancel.raise_if_cancelled()
            if not self._extractors.is_supported(doc.media_type):
                raise UnsupportedFormat(doc.media_type)

            data = self._storage.download(doc.download_url)
            cancel.raise_if_cancelled()

            extracted = self._extractors.extract(data, doc.media_type)
            logger.info("Extracted %d characters from %s", len(extracted.text), doc.file_name)
            cancel.raise_if_cancelled()

            chunks = chunk_text(extracted.text, self._chunking)
            if not chunks:
                raise EmptyExtraction()
            chunking_stats = get_chunking_stats(chunks)
            logger.info("Created %d chunks (avg %.0f chars)", chunking_stats.chunk_count, chunking_stats.avg_chunk_size)

            embedded = self._embedder.embed_batch([c.content for c in chunks])
            logger.info("Generated %d embeddings (%d tokens)", len(embedded.vectors), embedded.total_tokens)
            cancel.raise_if_cancelled()

            points = self._build_points(doc, chunks, embedded.vectors)
            self._index.ensure_collection()
            cancel.raise_if_cancelled()

            # Deterministic ids + delete-before-insert keep reprocessing idempotent.
            index_touched = True
            self._index.delete_by_document(doc.id)
            self._index.upsert(points)

            stats = IngestionStats(
                text_length=len(extracted.text),
                chunk_count=len(chunks),
                embedding_tokens=embedded.total_tokens,
                embedding_cost=self._cost_fn(embedded.total_tokens),
                chunking_stats=chunking_stats,
            )
            check_transition(doc.id, DocumentStatus.PROCESSING, DocumentStatus.READY)
            self._documents.update(
                doc.id,
                status=DocumentStatus.READY,
                vector_count=len(points),
                embedding_model=embedded.model,
                embedding_tokens=stats.embedding_tokens,
                embedding_cost=stats.embedding_cost,
                processing_error=None,
                processed_at=datetime.now(timezone.utc),
                metadata={
                    **doc.metadata,
                    "extracted_text_length": stats.text_length,
                    "page_count": extracted.page_count,
                    "chunking_stats": chunking_stats.model_dump(),
                    "extraction": extracted.metadata,
                },
            )
        except RAGError as exc:
            logger.error("Document %s failed: %s", doc.id, exc)
            return self._fail(doc, exc, index_touched)
        except Exception as exc:
            logger.exception("Document %s failed unexpectedly", doc.id)
            return self._fail(doc, exc, index_touched)

        logger.info("Document processing completed: %s in %.1fs", doc.id, time.monotonic() - t0)
        return IngestionOutcome(document_id=doc.id, success=True, status=DocumentStatus.READY, stats=stats)

    # -- internals ------------------------------------------------------------

    def _load(self, document_id: str) -> Document:
        doc = self._documents.get(document_id)
        if doc is None:
            raise DocumentNotFound(document_id)
        return doc

    def _begin(self, doc: Document, *, explicit: bool) -> Document:
        check_transition(doc.id, doc.status, DocumentStatus.PROCESSING, explicit=explicit)
        return self._documents.update(doc.id, status=DocumentStatus.PROCESSING, processing_error=None)

    @staticmethod
    def _build_points(doc: Document, chunks: list[Chunk], vectors: list[list[float]]) -> list[VectorPoint]:
        return [
            VectorPoint(
                id=point_id(doc.id, chunk.index),
                vector=vector,
                payload=PointPayload(
                    document_id=doc.id,
                    organization_id=doc.organization_id,
                    content=chunk.content,
                    chunk_index=chunk.index,
                    file_name=doc.file_name,
                    media_type=doc.media_type,
                    uploaded_by=doc.uploaded_by,
                    visibility=doc.visibility,
                    metadata={
                        "start_char": chunk.start_char,
                        "end_char": chunk.end_char,
                        "token_count": chunk.token_count,
                    },
                ),
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]

    def _fail(self, doc: Document, exc: Exception, index_touched: bool) -> IngestionOutcome:
        if index_touched or doc.vector_count > 0:
            try:
                self._index.delete_by_document(doc.id)
            except VectorIndexError:
                logger.warning("Could not remove partial vectors for %s", doc.id, exc_info=True)

        message = str(exc) or type(exc).__name__
        try:
            self._documents.update(
                doc.id,
                status=DocumentStatus.ERROR,
                processing_error=message,
                vector_count=0,
                processed_at=datetime.now(timezone.utc),
            )
        except Exception:
            logger.exception("Failed to record ERROR status for %s", doc.id)

        return IngestionOutcome(
            document_id=doc.id,
            success=False,
            status=DocumentStatus.ERROR,
            error=message,
            error_type=getattr(exc, "code", "PROCESSING_ERROR"),
        )

