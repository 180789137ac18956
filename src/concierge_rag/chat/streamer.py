"""
Generation Streamer

Builds the grounded prompt for a chat turn, streams the answer from the
generation provider, and persists the complete answer as one assistant
message once the stream finishes.

Deltas are forwarded to the caller as soon as they are parsed. If the stream
is cancelled, fails, or is abandoned by the caller, nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator, Dict, List, Optional, Sequence

from ..db.conversations import ConversationStore
from ..db.model_configs import GenerationConfig
from ..db.vector_store import ChunkMatch
from ..llm.client import GenerationClient
from ..providers.registry import get_provider

logger = logging.getLogger("concierge.generation")

SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Use the following context to answer the "
    "user's question. If the context doesn't contain relevant information, "
    "use your general knowledge:\n\n{context}"
)

NO_CONTEXT = "No relevant documents found in the knowledge base."


def build_messages(
    query: str,
    history: Sequence[Dict[str, str]],
    chunks: Sequence[ChunkMatch],
) -> List[Dict[str, str]]:
    """
    Assemble the system message (with retrieved context), prior turns and
    the new user query.
    """
    context = "\n\n".join(chunk.content for chunk in chunks) if chunks else NO_CONTEXT

    messages = [{"role": "system", "content": SYSTEM_PROMPT.format(context=context)}]
    messages.extend(
        {"role": turn["role"], "content": turn["content"]} for turn in history
    )
    messages.append({"role": "user", "content": query})
    return messages


class GenerationStreamer:
    """
    Streams one grounded answer and persists it on completion.
    """

    def __init__(
        self,
        client: GenerationClient,
        conversations: ConversationStore,
    ) -> None:
        self._client = client
        self._conversations = conversations

    async def generate(
        self,
        conversation_id: uuid.UUID,
        query: str,
        history: Sequence[Dict[str, str]],
        chunks: Sequence[ChunkMatch],
        config: GenerationConfig,
        api_key: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        """
        Yield answer deltas in order.

        Parameters
        ----------
        conversation_id : uuid.UUID
            Conversation the assistant message is appended to.
        query : str
            The new user message.
        history : Sequence[Dict[str, str]]
            Prior turns, oldest first.
        chunks : Sequence[ChunkMatch]
            Retrieved grounding context.
        config : GenerationConfig
            Provider, model and sampling parameters.
        api_key : str
            Decrypted generation provider key.
        cancel_event : Optional[asyncio.Event]
            When set, the stream stops and nothing is persisted.
        """
        provider = get_provider(config.provider)
        messages = build_messages(query, history, chunks)

        logger.info(
            "Generating answer for conversation %s with %s/%s (%d context chunks)",
            conversation_id,
            config.provider,
            config.model,
            len(chunks),
        )

        parts: List[str] = []

        stream = self._client.stream(
            provider,
            config.model,
            messages,
            api_key,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        try:
            async for delta in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                parts.append(delta)
                yield delta
                if cancel_event is not None and cancel_event.is_set():
                    break
        finally:
            await stream.aclose()

        if cancel_event is not None and cancel_event.is_set():
            logger.info("Generation cancelled for conversation %s, discarding answer", conversation_id)
            return

        answer = "".join(parts)
        if not answer.strip():
            logger.warning("Empty answer for conversation %s, nothing persisted", conversation_id)
            return

        await self._conversations.add_message(conversation_id, "assistant", answer)
        logger.info(
            "Persisted assistant message for conversation %s (%d chars)",
            conversation_id,
            len(answer),
        )
