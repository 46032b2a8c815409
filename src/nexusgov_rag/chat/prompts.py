"""Grounding prompt for chat completions.

The retrieved context is prepended to the conversation as a system
message; the chat history itself is passed through untouched.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from langchain_core.messages import SystemMessage

if TYPE_CHECKING:
    from langchain_core.messages import BaseMessage

    from nexusgov_rag.retrieval.models import RetrievalResponse

GROUNDED_SYSTEM = """\
You are an assistant for a public-sector organization. Answer the user's
question using the organization's documents below.

Rules:
1. Cite the documents you rely on with their label, e.g. [Source 1: policy.pdf].
2. If the documents do not contain the answer, say so honestly; do NOT
   fabricate information.
3. Answer in the language of the question.

Documents:
{context}
"""

UNGROUNDED_SYSTEM = """\
You are an assistant for a public-sector organization. The organization's
document search is currently unavailable, so answer from general knowledge
and tell the user that their documents could not be consulted.
"""


def build_grounded_messages(context: str, messages: list[BaseMessage]) -> list[BaseMessage]:
    """Prepend the context block to *messages* as a :class:`SystemMessage`.

    An empty *context* (no matching documents) returns *messages* unchanged.
    """
    if not context:
        return list(messages)
    return [SystemMessage(content=GROUNDED_SYSTEM.format(context=context)), *messages]


def messages_for_response(response: RetrievalResponse, messages: list[BaseMessage]) -> list[BaseMessage]:
    """Grounded messages for an available index, an explicit notice otherwise."""
    if not response.available:
        return [SystemMessage(content=UNGROUNDED_SYSTEM), *messages]
    return build_grounded_messages(response.context, messages)
