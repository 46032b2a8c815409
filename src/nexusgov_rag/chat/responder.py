"""Grounded chat: retrieve for the latest user turn, then ask the chat model.

The retrieved context reaches the model as a prepended system message
(see :mod:`nexusgov_rag.chat.prompts`).  When the index is down the model
is still called, with a notice that documents could not be consulted.
PII screening of the user turn happens before this module is invoked.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from nexusgov_rag.chat.prompts import messages_for_response
from nexusgov_rag.config import settings
from nexusgov_rag.documents import Visibility
from nexusgov_rag.retrieval.models import RetrievalStats, RetrievedSource
from nexusgov_rag.retrieval.retriever import MAX_SOURCES, RetrievalOrchestrator

logger = logging.getLogger(__name__)


class GroundedAnswer(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    answer: str
    grounded: bool
    available: bool = True
    sources: list[RetrievedSource] = []
    stats: RetrievalStats
    usage: dict[str, int] = {}


def chat_model_from_settings(temperature: float = 0.7) -> ChatOpenAI:
    """Chat model behind the configured OpenAI-compatible gateway.

    LangChain requires a non-empty key, so ``"EMPTY"`` stands in when none
    is configured (local gateways ignore it).
    """
    kwargs: dict[str, Any] = {
        "model": settings.llm_model_name,
        "temperature": temperature,
        "api_key": settings.openai_api_key or "EMPTY",
    }
    if settings.llm_base_url:
        kwargs["base_url"] = settings.llm_base_url
    return ChatOpenAI(**kwargs)


def latest_user_text(messages: list[BaseMessage]) -> str:
    for message in reversed(messages):
        if isinstance(message, HumanMessage) and str(message.content).strip():
            return str(message.content)
    raise ValueError("conversation has no user message")


class GroundedResponder:
    """Answers a conversation with the organization's documents as context.

    Parameters
    ----------
    retriever:
        Tenant-scoped retrieval.
    chat_model:
        Any LangChain chat model; defaults to :func:`chat_model_from_settings`.
    """

    def __init__(self, retriever: RetrievalOrchestrator, chat_model: BaseChatModel | None = None) -> None:
        self._retriever = retriever
        self._chat_model = chat_model or chat_model_from_settings()

    def respond(
        self,
        messages: list[BaseMessage],
        organization_id: str,
        user_id: str,
        *,
        limit: int = MAX_SOURCES,
        visibility: Iterable[Visibility | str] | None = None,
    ) -> GroundedAnswer:
        """Retrieve for the last user turn and return the model's answer with its sources.

        Raises
        ------
        ValueError
            No user message, or blank organization.
        EmbeddingAPIFailure
            The query could not be embedded.
        """
        query = latest_user_text(messages)
        retrieval = self._retriever.retrieve(query, organization_id, user_id, limit=limit, visibility=visibility)

        reply = self._chat_model.invoke(messages_for_response(retrieval, messages))
        usage = getattr(reply, "usage_metadata", None) or {}
        logger.info(
            "Answered for org=%s with %d sources (available=%s)",
            organization_id,
            len(retrieval.sources),
            retrieval.available,
        )
        return GroundedAnswer(
            answer=str(reply.content),
            grounded=bool(retrieval.sources),
            available=retrieval.available,
            sources=retrieval.sources,
            stats=retrieval.stats,
            usage={k: v for k, v in usage.items() if isinstance(v, int)},
        )
