"""Domain models for vector points, search hits and retrieval responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from nexusgov_rag.documents import Visibility


def point_id(document_id: str, chunk_index: int) -> str:
    """Deterministic point id, so re-ingesting a document overwrites its points."""
    return f"{document_id}:{chunk_index}"


class MetadataFilter(BaseModel):
    """Declarative metadata filter for vector-store queries.

    Attributes
    ----------
    field:
        The payload key to filter on (e.g. ``"organizationId"``).
    operator:
        Comparison operator — one of ``eq``, ``ne``, ``in``, ``nin``, or
        ``or`` for a disjunction of filter groups.
    value:
        The value (or list of values for ``in`` / ``nin``, or list of
        filter groups for ``or``) to compare against.
    """

    field: str = ""
    operator: str = "eq"
    value: Any = None

    # -- helpers for common filters ------------------------------------------

    @classmethod
    def equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def one_of(cls, field: str, values: list[Any]) -> MetadataFilter:
        return cls(field=field, operator="in", value=values)

    @classmethod
    def any_of(cls, *groups: list[MetadataFilter]) -> MetadataFilter:
        """Match when every filter in at least one *group* matches."""
        return cls(operator="or", value=[list(g) for g in groups])


class PointPayload(BaseModel):
    """Payload stored with every vector; wire names are camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    document_id: str
    organization_id: str
    content: str
    chunk_index: int
    file_name: str
    media_type: str
    uploaded_by: str
    visibility: Visibility
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("organization_id")
    @classmethod
    def _organization_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("organization_id is required on every point")
        return value


class VectorPoint(BaseModel):
    id: str
    vector: list[float]
    payload: PointPayload


class SearchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    score: float
    payload: PointPayload


# -- retrieval responses -----------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SourceRef(_CamelModel):
    """Citation metadata for one retrieved passage."""

    document_id: str
    file_name: str
    media_type: str
    chunk_index: int
    uploaded_by: str | None = None
    visibility: Visibility | None = None


class RetrievedSource(_CamelModel):
    content: str
    score: float
    source: SourceRef
    metadata: dict[str, Any] = Field(default_factory=dict)

    def label(self, position: int) -> str:
        """``[Source N: fileName]`` header used in the prompt context."""
        return f"[Source {position}: {self.source.file_name}]"


class RetrievalStats(_CamelModel):
    query_tokens: int = 0
    results_count: int = 0
    top_score: float = 0.0


class RetrievalResponse(_CamelModel):
    """Ranked sources plus the assembled context block for the chat prompt.

    ``available`` is ``False`` when the vector index could not be reached;
    the response is then empty and chat continues ungrounded.
    """

    available: bool = True
    sources: list[RetrievedSource] = Field(default_factory=list)
    context: str = ""
    stats: RetrievalStats = Field(default_factory=RetrievalStats)
    error: str | None = None
