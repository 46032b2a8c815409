"""Request / response schemas for the REST API (camelCase on the wire)."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from nexusgov_rag.documents import Visibility
from nexusgov_rag.ingestion.coordinator import IngestionStats
from nexusgov_rag.retrieval.models import RetrievalStats, RetrievedSource


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Documents ─────────────────────────────────────────────────────────
class ProcessRequest(_CamelModel):
    """Trigger ingestion for an uploaded document."""

    document_id: str = Field(min_length=1)
    wait: bool = True


class ProcessResponse(_CamelModel):
    success: bool = True
    document_id: str
    stats: IngestionStats | None = None


class DeleteVectorsResponse(_CamelModel):
    success: bool = True
    document_id: str


class ErrorResponse(_CamelModel):
    error: str
    message: str
    error_type: str | None = None


# ── Search ────────────────────────────────────────────────────────────
class SearchRequest(_CamelModel):
    """RAG search; the query is assumed to be PII-screened already."""

    query: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=50)
    visibility: list[Visibility] | None = None


class SearchResponse(_CamelModel):
    success: bool = True
    query: str
    sources: list[RetrievedSource] = []
    context: str = ""
    stats: RetrievalStats


class UnavailableResponse(ErrorResponse):
    sources: list[RetrievedSource] = []


# ── Chat ──────────────────────────────────────────────────────────────
class ChatTurn(_CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(_CamelModel):
    """Grounded chat; the latest user turn is assumed to be PII-screened already."""

    messages: list[ChatTurn] = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=50)
    visibility: list[Visibility] | None = None


class ChatResponse(_CamelModel):
    success: bool = True
    message: str
    grounded: bool
    sources: list[RetrievedSource] = []
    stats: RetrievalStats
    usage: dict[str, int] = {}
