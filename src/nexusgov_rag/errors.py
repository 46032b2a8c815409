"""Error taxonomy for the ingestion and retrieval pipeline.

Every error carries a stable ``code`` so the serving layer and the
ingestion outcome can report *what kind* of failure happened without
string-matching messages.
"""

from __future__ import annotations


class RAGError(Exception):
    """Base class for all pipeline errors."""

    code = "RAG_ERROR"


# -- extraction ---------------------------------------------------------------


class UnsupportedFormat(RAGError):
    """The declared media type has no registered extractor."""

    code = "UNSUPPORTED_FORMAT"

    def __init__(self, media_type: str) -> None:
        super().__init__(f"Unsupported file type: {media_type}")
        self.media_type = media_type


class ExtractionFailure(RAGError):
    """A registered extractor could not parse the file bytes."""

    code = "EXTRACTION_FAILED"


class EmptyExtraction(RAGError):
    """Extraction succeeded but produced no text."""

    code = "EMPTY_EXTRACTION"

    def __init__(self, message: str = "No text content could be extracted from file") -> None:
        super().__init__(message)


# -- collaborators --------------------------------------------------------------


class DownloadFailure(RAGError):
    code = "DOWNLOAD_FAILED"


class EmbeddingAPIFailure(RAGError):
    code = "EMBEDDING_API_FAILURE"


class VectorIndexError(RAGError):
    """Base class for vector-index failures."""

    code = "VECTOR_INDEX_ERROR"


class VectorIndexUnavailable(VectorIndexError):
    code = "VECTOR_INDEX_UNAVAILABLE"


class VectorWriteFailure(VectorIndexError):
    code = "VECTOR_WRITE_FAILURE"


class SearchFailure(VectorIndexError):
    code = "SEARCH_FAILURE"


# -- document lifecycle ---------------------------------------------------------


class DocumentNotFound(RAGError):
    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class InvalidStatusTransition(RAGError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, document_id: str, current: str, target: str) -> None:
        super().__init__(f"Document {document_id}: cannot move from {current} to {target}")
        self.document_id = document_id
        self.current = current
        self.target = target


class IngestionCancelled(RAGError):
    code = "INGESTION_CANCELLED"

    def __init__(self, message: str = "Ingestion cancelled") -> None:
        super().__init__(message)


class CircuitOpenError(RAGError):
    """Raised instead of calling a dependency whose circuit breaker is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"Circuit '{name}' is open; retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after
