"""
Ingestion — extraction, chunking, and embedding into the vector index.

This package is responsible for the pipeline that converts uploaded
organizational files (PDF, Word, Excel, plain text) into embedded chunks
stored in the tenant-scoped vector index, and for the work queue that
runs that pipeline outside the triggering request.
"""
