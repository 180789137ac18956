"""
Chat Turn Service

Implements `sendChatTurn(conversationId, message)`:

1. Load prior conversation turns and record the user's message.
2. Retrieve grounding chunks for the message.
3. Resolve the generation configuration and provider key.
4. Stream the grounded answer; the streamer persists it on completion.

Preparation (steps 1-3) is separated from streaming so that configuration,
key and retrieval errors surface before any response bytes are sent.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from ..core.errors import ApiKeyNotConfiguredError
from ..db.conversations import ConversationStore
from ..db.model_configs import GenerationConfig, ModelConfigService
from ..db.vector_store import ChunkMatch
from ..keys.store import ApiKeyStore
from ..retrieval.retriever import Retriever
from .streamer import GenerationStreamer

logger = logging.getLogger("concierge.chat")


@dataclass
class PreparedTurn:
    """Everything needed to stream one answer."""
    conversation_id: uuid.UUID
    message: str
    history: List[Dict[str, str]]
    chunks: List[ChunkMatch]
    config: GenerationConfig
    api_key: str = field(repr=False)


class ChatService:
    def __init__(
        self,
        conversations: ConversationStore,
        retriever: Retriever,
        model_configs: ModelConfigService,
        keys: ApiKeyStore,
        streamer: GenerationStreamer,
    ) -> None:
        self._conversations = conversations
        self._retriever = retriever
        self._model_configs = model_configs
        self._keys = keys
        self._streamer = streamer

    async def prepare(
        self,
        conversation_id: uuid.UUID,
        message: str,
        generation_override: Optional[GenerationConfig] = None,
    ) -> PreparedTurn:
        """
        Resolve history, context, configuration and key for a turn.

        Raises
        ------
        ApiKeyNotConfiguredError
            If the generation provider has no key.
        ConfigMismatchError
            If the embedding configuration no longer matches stored vectors.
        """
        config = generation_override or await self._model_configs.get_generation_config()
        api_key = await self._keys.get_key(config.provider)

        await self._conversations.ensure_conversation(conversation_id)
        history = await self._conversations.get_history(conversation_id)

        try:
            chunks = await self._retriever.retrieve(message)
        except ApiKeyNotConfiguredError as exc:
            logger.warning("Embedding key unavailable, answering without knowledge base: %s", exc)
            chunks = []

        await self._conversations.add_message(conversation_id, "user", message)

        return PreparedTurn(
            conversation_id=conversation_id,
            message=message,
            history=history,
            chunks=chunks,
            config=config,
            api_key=api_key,
        )

    def stream(
        self,
        turn: PreparedTurn,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        return self._streamer.generate(
            turn.conversation_id,
            turn.message,
            turn.history,
            turn.chunks,
            turn.config,
            turn.api_key,
            cancel_event=cancel_event,
        )

    async def send_chat_turn(
        self,
        conversation_id: uuid.UUID,
        message: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[str]:
        """Prepare and stream a turn in one call."""
        turn = await self.prepare(conversation_id, message)
        async for delta in self.stream(turn, cancel_event=cancel_event):
            yield delta
