"""Embedding generation against an OpenAI-compatible embeddings endpoint.

Texts are sent in sequential batches of at most ``batch_size`` items so
token usage stays attributable per upstream call.  A failing batch aborts
the whole :meth:`EmbeddingGenerator.embed_batch` call — callers never see
a partial set of vectors.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import openai
from pydantic import BaseModel

from nexusgov_rag.config import settings
from nexusgov_rag.errors import CircuitOpenError, EmbeddingAPIFailure
from nexusgov_rag.resilience import CircuitBreaker, RetryPolicy, guarded_call

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100

# Worth retrying: network trouble, throttling, upstream 5xx.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class EmbeddingResult(BaseModel):
    vector: list[float]
    token_count: int
    model: str


class BatchEmbeddingResult(BaseModel):
    vectors: list[list[float]]
    token_counts: list[int]
    total_tokens: int
    model: str


def get_openai_client() -> openai.OpenAI:
    """Return an SDK client for the configured embeddings gateway.

    Retries are handled by :class:`RetryPolicy`, so the SDK's own retry
    loop is disabled.
    """
    kwargs: dict[str, Any] = {
        "api_key": settings.openai_api_key or "EMPTY",
        "timeout": settings.embedding_timeout,
        "max_retries": 0,
    }
    if settings.embedding_base_url:
        kwargs["base_url"] = settings.embedding_base_url
    return openai.OpenAI(**kwargs)


class EmbeddingGenerator:
    """Batched embedding client with token accounting.

    Parameters
    ----------
    client:
        Object exposing ``embeddings.create(model=..., input=...)`` (the
        ``openai`` SDK client or a test double).  Built from settings when
        *None*.
    model:
        Embedding model identifier sent upstream.
    batch_size:
        Items per upstream call, capped at :data:`MAX_BATCH_SIZE`.
    retry / breaker:
        Resilience wrappers applied to every upstream call.
    """

    def __init__(
        self,
        client: Any | None = None,
        *,
        model: str = settings.embedding_model,
        batch_size: int = settings.embedding_batch_size,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._client = client if client is not None else get_openai_client()
        self.model = model
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._retry = retry if retry is not None else RetryPolicy.from_settings(retry_on=TRANSIENT_ERRORS)
        self._breaker = breaker if breaker is not None else CircuitBreaker.from_settings("embeddings")

    # -- public API -----------------------------------------------------------

    def embed(self, text: str) -> EmbeddingResult:
        """Embed a single text (used for live queries)."""
        vectors, total = self._request(text, expected=1)
        return EmbeddingResult(vector=vectors[0], token_count=total, model=self.model)

    def embed_batch(self, texts: list[str]) -> BatchEmbeddingResult:
        """Embed *texts* in order, all-or-nothing.

        Raises
        ------
        EmbeddingAPIFailure
            When any batch fails; no vectors are returned in that case.
        """
        vectors: list[list[float]] = []
        token_counts: list[int] = []
        total_tokens = 0

        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            batch_no = start // self.batch_size + 1
            try:
                batch_vectors, batch_tokens = self._request(batch, expected=len(batch))
            except EmbeddingAPIFailure:
                logger.error("Embedding batch %d failed; aborting %d texts", batch_no, len(texts))
                raise

            vectors.extend(batch_vectors)
            total_tokens += batch_tokens
            # The API only reports an aggregate; spread it evenly.
            token_counts.extend([math.ceil(batch_tokens / len(batch))] * len(batch))
            logger.info("  embedded %d / %d (batch %d, %d tokens)", len(vectors), len(texts), batch_no, batch_tokens)

        return BatchEmbeddingResult(
            vectors=vectors,
            token_counts=token_counts,
            total_tokens=total_tokens,
            model=self.model,
        )

    # -- internals ------------------------------------------------------------

    def _create(self, payload: str | list[str]) -> Any:
        return self._client.embeddings.create(model=self.model, input=payload)

    def _request(self, payload: str | list[str], *, expected: int) -> tuple[list[list[float]], int]:
        try:
            response = guarded_call(self._create, payload, retry=self._retry, breaker=self._breaker)
        except CircuitOpenError as exc:
            raise EmbeddingAPIFailure(str(exc)) from exc
        except Exception as exc:
            raise EmbeddingAPIFailure(f"Embedding API error: {exc}") from exc

        try:
            data = sorted(response.data, key=lambda item: getattr(item, "index", 0))
            vectors = [list(item.embedding) for item in data]
            total = int(getattr(getattr(response, "usage", None), "total_tokens", 0) or 0)
        except (AttributeError, TypeError, ValueError) as exc:
            raise EmbeddingAPIFailure(f"Malformed embedding response: {exc}") from exc
        if len(vectors) != expected:
            raise EmbeddingAPIFailure(f"Embedding API returned {len(vectors)} vectors for {expected} inputs")
        return vectors, total


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two equal-length vectors (0.0 if either is zero)."""
    if len(a) != len(b):
        raise ValueError("Embeddings must have the same length")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def calculate_embedding_cost(token_count: int) -> float:
    """Cost in the reporting currency (SEK by default)."""
    usd = token_count / 1000 * settings.embedding_cost_per_1k_tokens_usd
    return usd * settings.currency_rate


def get_embedding_model_info() -> dict[str, Any]:
    return {
        "model": settings.embedding_model,
        "dimensions": settings.embedding_dimensions,
        "max_batch_size": MAX_BATCH_SIZE,
        "cost_per_1k_tokens_usd": settings.embedding_cost_per_1k_tokens_usd,
    }
