"""Chroma implementation of the vector-index abstraction."""

from __future__ import annotations

import json
import logging
from typing import Any

import chromadb
import httpx

from nexusgov_rag.config import settings
from nexusgov_rag.documents import Visibility
from nexusgov_rag.errors import (
    CircuitOpenError,
    SearchFailure,
    VectorIndexUnavailable,
    VectorWriteFailure,
)
from nexusgov_rag.resilience import CircuitBreaker, RetryPolicy, guarded_call
from nexusgov_rag.retrieval.base import (
    DOCUMENT_FIELD,
    FILTERABLE_FIELDS,
    ORGANIZATION_FIELD,
    VectorIndexBase,
)
from nexusgov_rag.retrieval.models import MetadataFilter, PointPayload, SearchResult, VectorPoint

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError, ConnectionError, TimeoutError)

_OP_MAP = {
    "eq": "$eq",
    "ne": "$ne",
    "in": "$in",
    "nin": "$nin",
}

_METADATA_JSON = "metadataJson"


def _combine(clauses: list[dict[str, Any]], op: str) -> dict[str, Any] | None:
    # Chroma rejects $and / $or with fewer than two operands.
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {op: clauses}


def _build_chroma_where(filters: list[MetadataFilter]) -> dict[str, Any] | None:
    """Convert a list of :class:`MetadataFilter` to Chroma ``where`` syntax."""
    clauses: list[dict[str, Any]] = []
    for f in filters:
        if f.operator == "or":
            groups = [_build_chroma_where(group) for group in f.value]
            clause = _combine([g for g in groups if g], "$or")
            if clause:
                clauses.append(clause)
            continue
        chroma_op = _OP_MAP.get(f.operator)
        if chroma_op is None:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
        clauses.append({f.field: {chroma_op: f.value}})
    return _combine(clauses, "$and")


def _to_metadata(payload: PointPayload) -> dict[str, Any]:
    """Flatten a payload into Chroma's scalar-only metadata (content goes to ``documents``)."""
    meta = payload.model_dump(by_alias=True, exclude={"content", "metadata"}, mode="json")
    meta[_METADATA_JSON] = json.dumps(payload.metadata, default=str, ensure_ascii=False)
    return meta


def _from_metadata(content: str | None, meta: dict[str, Any]) -> PointPayload:
    meta = dict(meta or {})
    extra = json.loads(meta.pop(_METADATA_JSON, "{}") or "{}")
    return PointPayload.model_validate(
        {**meta, "content": content or "", "metadata": extra, "visibility": Visibility(meta["visibility"])}
    )


class ChromaVectorIndex(VectorIndexBase):
    """Chroma-backed vector index.

    The chromadb client is created by the caller and injected, so tests
    can pass an in-process ``chromadb.EphemeralClient()``.

    Parameters
    ----------
    client:
        A chromadb client (``HttpClient`` in production).
    collection_name:
        Name of the Chroma collection.
    vector_size:
        Fixed embedding dimensionality.
    retry / breaker:
        Resilience wrappers applied to every Chroma call.
    """

    def __init__(
        self,
        client: Any,
        collection_name: str = settings.chroma_collection,
        *,
        vector_size: int = settings.embedding_dimensions,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        super().__init__(collection_name, vector_size)
        self._client = client
        self._collection: Any | None = None
        self._retry = retry if retry is not None else RetryPolicy.from_settings(retry_on=TRANSIENT_ERRORS)
        self._breaker = breaker if breaker is not None else CircuitBreaker.from_settings("vector-index")

    @classmethod
    def from_settings(cls) -> ChromaVectorIndex:
        client = chromadb.HttpClient(host=settings.chroma_host, port=settings.chroma_port)
        return cls(client, settings.chroma_collection, vector_size=settings.embedding_dimensions)

    def _call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        return guarded_call(func, *args, retry=self._retry, breaker=self._breaker, **kwargs)

    # -- VectorIndexBase overrides --------------------------------------------

    def ensure_collection(self) -> None:
        metadata = {
            "hnsw:space": self.distance,
            "dimension": self.vector_size,
            "filterable_fields": ",".join(FILTERABLE_FIELDS),
        }
        try:
            # Older clients return Collection objects, newer ones plain names.
            existing_names = {getattr(c, "name", c) for c in self._call(self._client.list_collections)}
            if self.collection_name in existing_names:
                # get_or_create would overwrite the stored metadata on some versions.
                collection = self._call(
                    self._client.get_collection,
                    name=self.collection_name,
                    embedding_function=None,
                )
            else:
                collection = self._call(
                    self._client.get_or_create_collection,
                    name=self.collection_name,
                    metadata=metadata,
                    embedding_function=None,
                )
        except Exception as exc:
            raise VectorIndexUnavailable(f"Failed to ensure collection '{self.collection_name}': {exc}") from exc

        existing = collection.metadata or {}
        space = existing.get("hnsw:space", self.distance)
        dimension = existing.get("dimension", self.vector_size)
        if space != self.distance or dimension != self.vector_size:
            raise VectorIndexUnavailable(
                f"Collection '{self.collection_name}' has distance={space} dimension={dimension}, "
                f"expected {self.distance}/{self.vector_size}"
            )
        self._collection = collection

    def upsert(self, points: list[VectorPoint]) -> None:
        if not points:
            return
        self.validate_points(points)
        collection = self._require_collection()
        try:
            self._call(
                collection.upsert,
                ids=[p.id for p in points],
                embeddings=[p.vector for p in points],
                documents=[p.payload.content for p in points],
                metadatas=[_to_metadata(p.payload) for p in points],
            )
        except Exception as exc:
            raise self._classify(exc, VectorWriteFailure, "Failed to upsert vectors") from exc
        logger.info("Upserted %d vectors to '%s'", len(points), self.collection_name)

    def delete_by_document(self, document_id: str) -> None:
        collection = self._require_collection()
        try:
            self._call(collection.delete, where={DOCUMENT_FIELD: {"$eq": document_id}})
        except Exception as exc:
            raise self._classify(exc, VectorWriteFailure, "Failed to delete vectors") from exc
        logger.info("Deleted vectors for document: %s", document_id)

    def count(self, *, organization_id: str | None = None, document_id: str | None = None) -> int:
        filters = []
        if organization_id is not None:
            filters.append(MetadataFilter.equals(ORGANIZATION_FIELD, organization_id))
        if document_id is not None:
            filters.append(MetadataFilter.equals(DOCUMENT_FIELD, document_id))
        collection = self._require_collection()
        try:
            if not filters:
                return int(self._call(collection.count))
            return self._count_where(collection, _build_chroma_where(filters))
        except Exception as exc:
            raise self._classify(exc, SearchFailure, "Failed to count vectors") from exc

    def collection_info(self) -> dict[str, Any]:
        return {
            "name": self.collection_name,
            "points_count": self.count(),
            "vector_size": self.vector_size,
            "distance": self.distance,
            "filterable_fields": list(FILTERABLE_FIELDS),
            "status": "ready",
        }

    def health_check(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            logger.warning("Chroma health-check failed", exc_info=True)
            return False

    def _query(self, query_vector: list[float], filters: list[MetadataFilter], limit: int) -> list[SearchResult]:
        where = _build_chroma_where(filters)
        collection = self._require_collection()
        try:
            # Chroma clamps n_results to the filtered population itself.
            results = self._call(
                collection.query,
                query_embeddings=[query_vector],
                n_results=limit,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise self._classify(exc, SearchFailure, "Failed to search vectors") from exc

        ids = (results.get("ids") or [[]])[0]
        docs = (results.get("documents") or [[]])[0]
        metas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]

        hits: list[SearchResult] = []
        for hit_id, content, meta, dist in zip(ids, docs, metas, distances):
            # Cosine distance → cosine similarity.
            hits.append(SearchResult(id=hit_id, score=1.0 - float(dist), payload=_from_metadata(content, meta)))
        return hits

    # -- internals ------------------------------------------------------------

    def _require_collection(self) -> Any:
        if self._collection is None:
            self.ensure_collection()
        return self._collection

    def _count_where(self, collection: Any, where: dict[str, Any] | None) -> int:
        found = self._call(collection.get, where=where, include=[])
        return len(found.get("ids") or [])

    def _classify(self, exc: Exception, failure: type[Exception], message: str) -> Exception:
        """Map a Chroma exception to *failure*, or to unavailability if the server is gone."""
        if isinstance(exc, CircuitOpenError) or isinstance(exc, TRANSIENT_ERRORS) or not self.health_check():
            return VectorIndexUnavailable(f"{message}: {exc}")
        return failure(f"{message}: {exc}")
