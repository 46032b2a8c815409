"""
Serving — REST endpoints for document ingestion and RAG search.
"""
