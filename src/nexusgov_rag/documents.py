"""Document records and the metadata-store collaborator.

The metadata store (a document database in production) owns the
:class:`Document` records; the ingestion coordinator is the only
component that mutates their processing status.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from nexusgov_rag.errors import DocumentNotFound, InvalidStatusTransition


class Visibility(str, Enum):
    """Who inside an organization may retrieve a document's chunks."""

    GLOBAL = "GLOBAL"
    UNIT = "UNIT"
    PRIVATE = "PRIVATE"


class DocumentStatus(str, Enum):
    PROCESSING = "PROCESSING"
    READY = "READY"
    ERROR = "ERROR"


# READY -> PROCESSING is only reachable through an explicit reprocess call,
# which passes ``explicit=True`` to :func:`check_transition`.
_ALLOWED_TRANSITIONS: dict[DocumentStatus, set[DocumentStatus]] = {
    DocumentStatus.PROCESSING: {DocumentStatus.READY, DocumentStatus.ERROR},
    DocumentStatus.ERROR: {DocumentStatus.PROCESSING},
    DocumentStatus.READY: set(),
}


def check_transition(
    document_id: str,
    current: DocumentStatus,
    target: DocumentStatus,
    *,
    explicit: bool = False,
) -> None:
    """Raise :class:`InvalidStatusTransition` unless *current* → *target* is allowed."""
    if target in _ALLOWED_TRANSITIONS[current]:
        return
    if explicit and current == DocumentStatus.READY and target == DocumentStatus.PROCESSING:
        return
    raise InvalidStatusTransition(document_id, current.value, target.value)


class Document(BaseModel):
    """An uploaded organizational file and its processing state."""

    id: str
    organization_id: str
    uploaded_by: str
    file_name: str
    media_type: str
    download_url: str = ""
    file_size: int = 0
    visibility: Visibility = Visibility.GLOBAL
    status: DocumentStatus = DocumentStatus.PROCESSING

    vector_count: int = 0
    embedding_model: str | None = None
    embedding_tokens: int = 0
    embedding_cost: float = 0.0
    processing_error: str | None = None
    processed_at: datetime | None = None

    # Free-form; ingestion adds extracted_text_length, page_count, chunking_stats.
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentStore(ABC):
    """Metadata-store interface consumed by the ingestion coordinator."""

    @abstractmethod
    def get(self, document_id: str) -> Document | None:
        """Return the document, or ``None`` when it does not exist."""
        ...

    @abstractmethod
    def update(self, document_id: str, **fields: Any) -> Document:
        """Patch *fields* on the document and return the updated record.

        Raises :class:`~nexusgov_rag.errors.DocumentNotFound` for unknown ids.
        """
        ...


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store for local runs and tests."""

    def __init__(self, documents: list[Document] | None = None) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, Document] = {d.id: d for d in documents or []}

    def add(self, document: Document) -> Document:
        with self._lock:
            self._docs[document.id] = document
        return document

    def get(self, document_id: str) -> Document | None:
        with self._lock:
            doc = self._docs.get(document_id)
            return doc.model_copy(deep=True) if doc is not None else None

    def update(self, document_id: str, **fields: Any) -> Document:
        with self._lock:
            doc = self._docs.get(document_id)
            if doc is None:
                raise DocumentNotFound(document_id)
            updated = doc.model_copy(update=fields, deep=True)
            self._docs[document_id] = updated
            return updated.model_copy(deep=True)
