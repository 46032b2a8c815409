"""
Retrieval — tenant-scoped vector search and context assembly.

This package wraps the vector index behind a clean interface so that
the chat layer never needs to know which database backs retrieval.

Public surface
--------------
- :class:`RetrievalOrchestrator` — main entry point for retrieval with citations.
- :class:`VectorIndexBase` — abstract backend (subclass for other databases).
- :class:`ChromaVectorIndex` — default Chroma backend.
- :class:`RetrievalResponse`, :class:`RetrievedSource`, :class:`MetadataFilter` — data models.
"""

from nexusgov_rag.retrieval.base import VectorIndexBase, build_tenant_filter
from nexusgov_rag.retrieval.models import MetadataFilter, RetrievalResponse, RetrievedSource
from nexusgov_rag.retrieval.retriever import RetrievalOrchestrator

__all__ = [
    "ChromaVectorIndex",
    "MetadataFilter",
    "RetrievalOrchestrator",
    "RetrievalResponse",
    "RetrievedSource",
    "VectorIndexBase",
    "build_tenant_filter",
]


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import ChromaVectorIndex to avoid pulling in chromadb at import time."""
    if name == "ChromaVectorIndex":
        from nexusgov_rag.retrieval.chroma_store import ChromaVectorIndex

        return ChromaVectorIndex
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
