"""
Conversation Store - durable persistence contract for identified users.

ConversationStore is the CRUD contract the orchestrator depends on.
InMemoryConversationStore backs development and tests; the PostgreSQL
implementation lives in services.database.

Every owner-scoped read treats "not owned" the same as "absent" so callers
cannot probe for other users' chat ids.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from errors import NotFoundError
from routers.chat_orchestration.session import (
    DEFAULT_CHAT_TITLE,
    Chat,
    Message,
    MessageRole,
    utcnow,
)

logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """Durable chats and messages, scoped by owner."""

    async def init(self) -> None:
        """Prepare the backing storage. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    @abstractmethod
    async def create_chat(self, owner_id: str, title: Optional[str] = None) -> Chat:
        ...

    @abstractmethod
    async def list_chats(self, owner_id: str) -> List[Chat]:
        """Chats owned by owner_id, most recently updated first, without messages."""

    @abstractmethod
    async def get_chat(self, chat_id: str, owner_id: Optional[str] = None, limit: Optional[int] = None) -> Optional[Chat]:
        """Chat with its most recent `limit` messages (all when None), or None.

        When owner_id is given, a chat owned by someone else is reported as None.
        """

    @abstractmethod
    async def update_title(self, chat_id: str, owner_id: str, title: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def delete_chat(self, chat_id: str, owner_id: str) -> bool:
        ...

    @abstractmethod
    async def add_message(
        self,
        chat_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Append a message and bump the chat's updated_at."""

    @abstractmethod
    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        """Messages in creation order; the most recent `limit` when given."""

    async def ping(self) -> bool:
        return True


class InMemoryConversationStore(ConversationStore):
    """Process-local store. Contents are lost on restart."""

    def __init__(self):
        self._chats: Dict[str, Chat] = {}
        self._lock = asyncio.Lock()

    async def create_chat(self, owner_id: str, title: Optional[str] = None) -> Chat:
        now = utcnow()
        chat = Chat(
            id=str(uuid.uuid4()),
            title=(title or "").strip() or DEFAULT_CHAT_TITLE,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._chats[chat.id] = chat
        logger.debug(f"Chat created: {chat.id} owner={owner_id}")
        return chat.snapshot()

    async def list_chats(self, owner_id: str) -> List[Chat]:
        owned = [c for c in self._chats.values() if c.owner_id == owner_id]
        owned.sort(key=lambda c: c.updated_at, reverse=True)
        return [c.snapshot(limit=None) for c in owned]

    def _owned(self, chat_id: str, owner_id: Optional[str]) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        if chat is None or (owner_id is not None and chat.owner_id != owner_id):
            return None
        return chat

    async def get_chat(self, chat_id: str, owner_id: Optional[str] = None, limit: Optional[int] = None) -> Optional[Chat]:
        chat = self._owned(chat_id, owner_id)
        return chat.snapshot(limit) if chat else None

    async def update_title(self, chat_id: str, owner_id: str, title: str) -> Optional[Chat]:
        async with self._lock:
            chat = self._owned(chat_id, owner_id)
            if chat is None:
                return None
            chat.title = title
            chat.updated_at = utcnow()
            return chat.snapshot()

    async def delete_chat(self, chat_id: str, owner_id: str) -> bool:
        async with self._lock:
            if self._owned(chat_id, owner_id) is None:
                return False
            del self._chats[chat_id]
        logger.debug(f"Chat deleted: {chat_id}")
        return True

    async def add_message(
        self,
        chat_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        async with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
            return chat.append(role, content, metadata)

    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        chat = self._chats.get(chat_id)
        if chat is None:
            return []
        return list(chat.messages[-limit:] if limit else chat.messages)
