"""Shared configuration loaded from environment / .env file."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Embedding API (OpenAI-compatible, e.g. OpenRouter)
    openai_api_key: str = Field(default="", description="API key for the embedding / chat gateway")
    embedding_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Base URL of the OpenAI-compatible embeddings endpoint. Empty for OpenAI cloud.",
    )
    embedding_model: str = "openai/text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100
    embedding_timeout: float = 30.0

    # Cost accounting (USD per 1K tokens, converted with currency_rate)
    embedding_cost_per_1k_tokens_usd: float = 0.00002
    currency_rate: float = Field(default=10.5, description="Reporting currency units per USD (SEK)")

    # Vector store
    chroma_host: str = "localhost"
    chroma_port: int = 8000
    chroma_collection: str = "nexusgov_documents"

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 100
    preserve_paragraphs: bool = True

    # Retrieval
    retrieval_max_sources: int = 5
    retrieval_score_threshold: float = 0.0
    visibility_policy: str = Field(
        default="reference",
        description="'reference' (fixed default visibility set) or 'membership' (unit / uploader checks)",
    )

    # Resilience
    retry_attempts: int = 3
    retry_backoff_min: float = 0.5
    retry_backoff_max: float = 8.0
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 30.0
    download_timeout: float = 60.0

    # Chat completion
    llm_model_name: str = "openai/gpt-4o-mini"
    llm_base_url: str = "https://openrouter.ai/api/v1"

    # Ingestion queue
    ingestion_workers: int = 4
    ingestion_max_finished_items: int = 1000

    # HTTP server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton: import `settings` wherever needed.
settings = Settings()
