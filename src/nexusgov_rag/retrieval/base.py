"""Abstract base class for vector-index backends.

The tenant filter is built *here*, inside :meth:`VectorIndexBase.search`,
never by callers: every backend receives the organization / visibility
constraint from :func:`build_tenant_filter` and every hit is re-checked
against the caller's organization before it is returned.  Adding a
backend only requires implementing the abstract methods below.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from nexusgov_rag.documents import Visibility
from nexusgov_rag.retrieval.models import MetadataFilter, SearchResult, VectorPoint

logger = logging.getLogger(__name__)

# Payload keys declared as filterable keyword fields.
ORGANIZATION_FIELD = "organizationId"
DOCUMENT_FIELD = "documentId"
VISIBILITY_FIELD = "visibility"
UPLOADER_FIELD = "uploadedBy"
FILTERABLE_FIELDS = (ORGANIZATION_FIELD, DOCUMENT_FIELD, VISIBILITY_FIELD)


def build_tenant_filter(
    organization_id: str,
    visibility: Iterable[Visibility | str],
    *,
    private_owner_id: str | None = None,
) -> list[MetadataFilter]:
    """Mandatory search filter: same organization AND an allowed visibility.

    When *private_owner_id* is given, PRIVATE points only match if they
    were uploaded by that user.
    """
    if not organization_id or not str(organization_id).strip():
        raise ValueError("organization_id is required for every search")

    allowed = sorted({Visibility(v).value for v in visibility})
    org = MetadataFilter.equals(ORGANIZATION_FIELD, organization_id)

    if private_owner_id is None or Visibility.PRIVATE.value not in allowed:
        return [org, MetadataFilter.one_of(VISIBILITY_FIELD, allowed)]

    shared = [v for v in allowed if v != Visibility.PRIVATE.value]
    own_private = [
        MetadataFilter.equals(VISIBILITY_FIELD, Visibility.PRIVATE.value),
        MetadataFilter.equals(UPLOADER_FIELD, private_owner_id),
    ]
    if not shared:
        return [org, *own_private]
    return [org, MetadataFilter.any_of([MetadataFilter.one_of(VISIBILITY_FIELD, shared)], own_private)]


class VectorIndexBase(ABC):
    """Backend-agnostic vector-index interface.

    Parameters
    ----------
    collection_name:
        Logical name of the collection / index.
    vector_size:
        Fixed dimensionality every stored vector must have.
    """

    distance = "cosine"

    def __init__(self, collection_name: str, vector_size: int) -> None:
        self.collection_name = collection_name
        self.vector_size = vector_size

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    def ensure_collection(self) -> None:
        """Create the collection (cosine metric, fixed size) if absent. Idempotent."""
        ...

    @abstractmethod
    def upsert(self, points: list[VectorPoint]) -> None:
        """Write or overwrite *points* by id; returns once the write is durable."""
        ...

    @abstractmethod
    def delete_by_document(self, document_id: str) -> None:
        """Remove every point belonging to *document_id*."""
        ...

    @abstractmethod
    def count(self, *, organization_id: str | None = None, document_id: str | None = None) -> int:
        """Number of stored points, optionally restricted by payload field."""
        ...

    @abstractmethod
    def collection_info(self) -> dict[str, Any]:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Return ``True`` when the backend is reachable and ready."""
        ...

    @abstractmethod
    def _query(self, query_vector: list[float], filters: list[MetadataFilter], limit: int) -> list[SearchResult]:
        """Backend similarity query; *filters* must be applied server-side."""
        ...

    # -- shared behavior ------------------------------------------------------

    def validate_points(self, points: list[VectorPoint]) -> None:
        for point in points:
            if len(point.vector) != self.vector_size:
                raise ValueError(
                    f"Point {point.id} has dimension {len(point.vector)}, collection expects {self.vector_size}"
                )

    def search(
        self,
        query_vector: list[float],
        organization_id: str,
        limit: int = 10,
        visibility: Iterable[Visibility | str] = tuple(Visibility),
        *,
        private_owner_id: str | None = None,
    ) -> list[SearchResult]:
        """Tenant-scoped similarity search, best match first.

        Only points whose ``organizationId`` equals *organization_id* and
        whose visibility is in *visibility* are eligible.
        """
        visibility = list(visibility)
        filters = build_tenant_filter(organization_id, visibility, private_owner_id=private_owner_id)
        if not visibility or limit <= 0:
            return []
        if len(query_vector) != self.vector_size:
            raise ValueError(f"Query vector has dimension {len(query_vector)}, expected {self.vector_size}")

        hits = self._query(query_vector, filters, limit)

        scoped: list[SearchResult] = []
        for hit in hits:
            if hit.payload.organization_id != organization_id:
                logger.error(
                    "Dropping point %s from another organization in search for %s",
                    hit.id,
                    organization_id,
                )
                continue
            scoped.append(hit)
        scoped.sort(key=lambda h: h.score, reverse=True)
        return scoped[:limit]
