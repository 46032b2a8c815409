"""Retrieval orchestrator — tenant-scoped search with citations and prompt context.

This module is the **primary public interface** for retrieval.  A query
is embedded, searched under the caller's organization and visibility
scope, capped to a handful of sources, and assembled into one labeled
context block for the chat prompt.

Usage::

    from nexusgov_rag.retrieval.retriever import RetrievalOrchestrator

    orchestrator = RetrievalOrchestrator(embedder, index)
    response = orchestrator.retrieve("Vilka regler gäller för semester?", "org-1", "user-7")
    for source in response.sources:
        print(source.source.file_name, source.score)

PII screening of the query happens upstream, before :meth:`retrieve` is called.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from nexusgov_rag.documents import Visibility
from nexusgov_rag.errors import SearchFailure, VectorIndexUnavailable
from nexusgov_rag.ingestion.embedder import EmbeddingGenerator
from nexusgov_rag.retrieval.base import VectorIndexBase
from nexusgov_rag.retrieval.models import (
    RetrievalResponse,
    RetrievalStats,
    RetrievedSource,
    SearchResult,
    SourceRef,
)

logger = logging.getLogger(__name__)

MAX_SOURCES = 5
DEFAULT_VISIBILITY = (Visibility.GLOBAL, Visibility.UNIT, Visibility.PRIVATE)


# ---------------------------------------------------------------------------
# Visibility policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VisibilityScope:
    """Visibility values a requester may see.

    ``private_owner_id`` narrows PRIVATE matches to that uploader's points.
    """

    visibilities: tuple[Visibility, ...]
    private_owner_id: str | None = None


class ReferenceVisibilityPolicy:
    """Caller override, else the fixed default set; no membership checks."""

    def scope(
        self,
        organization_id: str,
        user_id: str,
        override: Iterable[Visibility | str] | None = None,
    ) -> VisibilityScope:
        values = DEFAULT_VISIBILITY if override is None else tuple(Visibility(v) for v in override)
        return VisibilityScope(values)


class MembershipVisibilityPolicy:
    """GLOBAL always; UNIT for unit members; PRIVATE only for the uploader's own files.

    Parameters
    ----------
    unit_resolver:
        ``(organization_id, user_id) -> bool`` reporting unit membership.
    """

    def __init__(self, unit_resolver: Callable[[str, str], bool]) -> None:
        self._unit_resolver = unit_resolver

    def scope(
        self,
        organization_id: str,
        user_id: str,
        override: Iterable[Visibility | str] | None = None,
    ) -> VisibilityScope:
        allowed = [Visibility.GLOBAL]
        if self._unit_resolver(organization_id, user_id):
            allowed.append(Visibility.UNIT)
        allowed.append(Visibility.PRIVATE)
        if override is not None:
            # An override can narrow the scope, never widen it.
            requested = {Visibility(v) for v in override}
            allowed = [v for v in allowed if v in requested]
        return VisibilityScope(tuple(allowed), private_owner_id=user_id)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def build_context(sources: list[RetrievedSource]) -> str:
    """``[Source N: fileName]\\n<content>`` blocks separated by blank lines."""
    return "\n\n".join(f"{s.label(i)}\n{s.content}" for i, s in enumerate(sources, 1))


class RetrievalOrchestrator:
    """High-level retriever over an :class:`EmbeddingGenerator` and a :class:`VectorIndexBase`.

    Parameters
    ----------
    embedder:
        Embeds the live query.
    index:
        Vector index searched under the tenant filter.
    visibility_policy:
        Resolves the requester's visibility scope; defaults to
        :class:`ReferenceVisibilityPolicy`.
    max_sources:
        Hard cap on sources per response.
    score_threshold:
        Minimum similarity score; results below this are discarded.
    """

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        index: VectorIndexBase,
        *,
        visibility_policy: ReferenceVisibilityPolicy | MembershipVisibilityPolicy | None = None,
        max_sources: int = MAX_SOURCES,
        score_threshold: float = 0.0,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._policy = visibility_policy or ReferenceVisibilityPolicy()
        self.max_sources = max_sources
        self.score_threshold = score_threshold

    # -- public API -----------------------------------------------------------

    def retrieve(
        self,
        query: str,
        organization_id: str,
        requesting_user_id: str,
        limit: int = MAX_SOURCES,
        visibility: Iterable[Visibility | str] | None = None,
    ) -> RetrievalResponse:
        """Embed *query*, search the organization's index and assemble the context.

        Returns an empty (but valid) response when nothing matches, and a
        response with ``available=False`` when the index is unreachable.

        Raises
        ------
        ValueError
            Blank query or organization id.
        EmbeddingAPIFailure
            The query could not be embedded.
        """
        if not query or not query.strip():
            raise ValueError("query is required")
        if not organization_id or not organization_id.strip():
            raise ValueError("organization_id is required")

        embedded = self._embedder.embed(query)
        scope = self._policy.scope(organization_id, requesting_user_id, visibility)
        k = max(0, min(limit, self.max_sources))

        logger.info(
            "Searching %d sources for org=%s user=%s visibility=%s",
            k,
            organization_id,
            requesting_user_id,
            [v.value for v in scope.visibilities],
        )
        try:
            hits = self._index.search(
                embedded.vector,
                organization_id,
                k,
                scope.visibilities,
                private_owner_id=scope.private_owner_id,
            )
        except (VectorIndexUnavailable, SearchFailure) as exc:
            logger.warning("Vector index unavailable, answering ungrounded: %s", exc)
            return RetrievalResponse(
                available=False,
                stats=RetrievalStats(query_tokens=embedded.token_count),
                error=str(exc),
            )

        sources = [self._to_source(h) for h in hits if h.score >= self.score_threshold][: self.max_sources]
        logger.info("Found %d relevant sources", len(sources))
        return RetrievalResponse(
            sources=sources,
            context=build_context(sources),
            stats=RetrievalStats(
                query_tokens=embedded.token_count,
                results_count=len(sources),
                top_score=sources[0].score if sources else 0.0,
            ),
        )

    # -- LangChain compat -----------------------------------------------------

    def as_langchain_retriever(self, organization_id: str, user_id: str, k: int = MAX_SOURCES) -> Any:
        """Return a LangChain retriever bound to one requester's scope.

        LangChain is imported only here so the rest of the retrieval
        package does not depend on it.
        """
        from langchain_core.documents import Document
        from langchain_core.retrievers import BaseRetriever

        outer = self

        class _LCRetriever(BaseRetriever):
            """Adapter that satisfies LangChain's retriever protocol."""

            def _get_relevant_documents(self_inner, query: str, **kwargs: Any) -> list[Document]:  # type: ignore[override]  # noqa: N805
                response = outer.retrieve(query, organization_id, user_id, limit=k)
                return [
                    Document(
                        page_content=s.content,
                        metadata={**s.metadata, "score": s.score, "_citation": s.source.model_dump(by_alias=True)},
                    )
                    for s in response.sources
                ]

        return _LCRetriever()

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _to_source(hit: SearchResult) -> RetrievedSource:
        payload = hit.payload
        return RetrievedSource(
            content=payload.content,
            score=hit.score,
            source=SourceRef(
                document_id=payload.document_id,
                file_name=payload.file_name,
                media_type=payload.media_type,
                chunk_index=payload.chunk_index,
                uploaded_by=payload.uploaded_by,
                visibility=payload.visibility,
            ),
            metadata=dict(payload.metadata),
        )


def visibility_policy_from_settings(
    unit_resolver: Callable[[str, str], bool] | None = None,
) -> ReferenceVisibilityPolicy | MembershipVisibilityPolicy:
    from nexusgov_rag.config import settings

    if settings.visibility_policy == "membership":
        if unit_resolver is None:
            raise ValueError("visibility_policy='membership' requires a unit_resolver")
        return MembershipVisibilityPolicy(unit_resolver)
    return ReferenceVisibilityPolicy()
