"""
Conversation Store

Database-backed replacement for the in-memory session store: reads the
ordered history of a conversation and appends messages to it.
"""

from __future__ import annotations

import uuid
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Conversation, Message
from ..core.errors import PersistenceError


class ConversationStore:
    """
    Message history access for one conversation at a time.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure_conversation(self, conversation_id: uuid.UUID) -> None:
        """Create the conversation row if the chat surface has not yet."""
        existing = await self._session.get(Conversation, conversation_id)
        if existing is None:
            self._session.add(Conversation(id=conversation_id, title="New Conversation"))
            await self._commit()

    async def get_history(self, conversation_id: uuid.UUID) -> List[Dict[str, str]]:
        """
        Return prior turns as `{"role", "content"}` dicts, oldest first.
        """
        result = await self._session.execute(
            select(Message.role, Message.content)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return [{"role": row.role, "content": row.content} for row in result.all()]

    async def add_message(
        self,
        conversation_id: uuid.UUID,
        role: str,
        content: str,
    ) -> None:
        self._session.add(
            Message(conversation_id=conversation_id, role=role, content=content)
        )
        await self._commit()

    async def _commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(f"Failed to save message: {exc}") from exc
