"""NexusGov RAG — document ingestion and tenant-scoped retrieval for grounded chat."""

__version__ = "0.1.0"
