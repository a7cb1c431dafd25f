"""
Ephemeral Chat Registry - in-memory anonymous chats with expiry sweeping.

Anonymous chats live only in process memory, keyed by a generated id
(anonymous_<epoch_ms>_<hex>). An entry disappears when it is migrated into
durable storage or when a periodic sweep finds it older than the TTL.
Nothing survives a process restart.

Expiry basis:
- "created"  (default): age = now - createdAt, regardless of activity
- "activity": age = now - updatedAt (last append)

Expired entries are invisible to get()/append() even before the next sweep
removes them.

Appends are serialized per chat id with an asyncio.Lock so two messages for
the same chat arriving together cannot lose an update.

Usage:
    registry = EphemeralChatRegistry(ttl_seconds=3600, sweep_interval=1800)
    registry.start()
    chat = await registry.create("New Chat")
    await registry.append(chat.id, MessageRole.USER, "hello")
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from errors import NotFoundError
from routers.chat_orchestration.session import (
    DEFAULT_CHAT_TITLE,
    Chat,
    Message,
    MessageRole,
    generate_anonymous_chat_id,
    utcnow,
)

logger = logging.getLogger(__name__)

EXPIRY_BASES = ("created", "activity")


class EphemeralChatRegistry:
    """Process-wide map of anonymous chat id -> Chat."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        sweep_interval: float = 1800,
        expiry_basis: str = "created",
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            ttl_seconds: Age at which an entry expires
            sweep_interval: Seconds between background sweeps
            expiry_basis: "created" or "activity"
            clock: Returns the current UTC time (injectable for tests)
        """
        if expiry_basis not in EXPIRY_BASES:
            raise ValueError(f"expiry_basis must be one of {EXPIRY_BASES}, got {expiry_basis!r}")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sweep_interval = sweep_interval
        self.expiry_basis = expiry_basis
        self._clock = clock
        self._chats: Dict[str, Chat] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._chats)

    def __contains__(self, chat_id: str) -> bool:
        return self.get(chat_id) is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _basis(self, chat: Chat) -> datetime:
        return chat.created_at if self.expiry_basis == "created" else chat.updated_at

    def _is_expired(self, chat: Chat, now: datetime) -> bool:
        return now - self._basis(chat) >= self.ttl

    def _live(self, chat_id: str) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        if chat is None or self._is_expired(chat, self._clock()):
            return None
        return chat

    def _lock_for(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, title: Optional[str] = None) -> Chat:
        now = self._clock()
        chat = Chat(
            id=generate_anonymous_chat_id(),
            title=(title or "").strip() or DEFAULT_CHAT_TITLE,
            owner_id=None,
            created_at=now,
            updated_at=now,
        )
        self._chats[chat.id] = chat
        logger.debug(f"Anonymous chat created: {chat.id}")
        return chat.snapshot()

    def get(self, chat_id: str) -> Optional[Chat]:
        """Snapshot of a live entry, or None if absent or expired."""
        chat = self._live(chat_id)
        return chat.snapshot() if chat else None

    async def append(
        self,
        chat_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Append a message atomically for this chat id.

        Raises:
            NotFoundError: the entry is absent, expired, or was removed while waiting
        """
        async with self._lock_for(chat_id):
            chat = self._live(chat_id)
            if chat is None:
                self._locks.pop(chat_id, None)
                raise NotFoundError("Anonymous chat not found", resource_type="anonymous_chat", resource_id=chat_id)
            return chat.append(role, content, metadata, now=self._clock())

    def remove(self, chat_id: str) -> bool:
        self._locks.pop(chat_id, None)
        return self._chats.pop(chat_id, None) is not None

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Delete every entry whose age has reached the TTL.

        Returns:
            Ids of removed entries
        """
        now = now or self._clock()
        expired = [cid for cid, chat in self._chats.items() if self._is_expired(chat, now)]
        for chat_id in expired:
            self.remove(chat_id)
            logger.debug(f"Cleaned up anonymous chat: {chat_id}")
        if expired:
            logger.info(f"Cleaned up {len(expired)} anonymous chat(s), {len(self._chats)} remaining")
        return expired

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Anonymous chat sweep error: {e}", exc_info=True)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._sweep_loop())
            logger.info(
                f"Anonymous chat sweeper started (ttl={self.ttl.total_seconds():.0f}s, "
                f"interval={self.sweep_interval:.0f}s, basis={self.expiry_basis})"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
