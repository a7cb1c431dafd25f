"""
PostgreSQL Connection Manager and durable Conversation Store.

Provides:
- Connection pooling with asyncpg
- Startup retry for transient connection races (postgres still booting)
- Schema bootstrap for the chats/messages tables
- PostgresConversationStore implementing the ConversationStore contract

Usage:
    from services.database import DatabaseManager, PostgresConversationStore

    store = PostgresConversationStore(DatabaseManager(url=runtime_config.database_url))
    await store.init()
    chat = await store.create_chat(user_id, "Trip planning")
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from errors import NotFoundError
from routers.chat_orchestration.session import (
    DEFAULT_CHAT_TITLE,
    Chat,
    Message,
    MessageRole,
    generate_message_id,
    next_timestamp,
    utcnow,
)
from services.chat_store import ConversationStore

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_chats_user_updated ON chats (user_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_messages_chat_created ON messages (chat_id, created_at);
"""


def _looks_like_transient_connect_error(error_text: str) -> bool:
    text = (error_text or "").lower()
    patterns = (
        "connection refused",
        "the database system is starting up",
        "server closed the connection unexpectedly",
        "connection reset by peer",
        "connection timed out",
        "timeout expired",
        "could not connect to server",
    )
    return any(p in text for p in patterns)


@dataclass
class DatabaseManager:
    """
    PostgreSQL connection pool manager.

    Query helpers return plain dicts so callers never touch asyncpg records.
    """

    url: str
    pool_size: int = 10
    connect_retries: int = 15
    connect_retry_delay_s: float = 2.0

    # Connection state
    _pool: Any = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def available(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Create the pool and make sure the schema exists.

        Retries only the transient startup errors; anything else propagates.
        """
        async with self._lock:
            if self._pool is not None:
                return

            for attempt in range(self.connect_retries + 1):
                try:
                    self._pool = await asyncpg.create_pool(
                        self.url,
                        min_size=1,
                        max_size=self.pool_size,
                        command_timeout=30.0,
                    )
                    break
                except Exception as e:
                    if attempt < self.connect_retries and _looks_like_transient_connect_error(str(e)):
                        if attempt == 0:
                            logger.info(
                                "PostgreSQL not ready yet; retrying startup connection "
                                f"(max_retries={self.connect_retries}, delay={self.connect_retry_delay_s:.1f}s)"
                            )
                        await asyncio.sleep(self.connect_retry_delay_s)
                        continue
                    logger.error(f"PostgreSQL connection failed: {e}")
                    raise

            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA_SQL)
            logger.info(f"PostgreSQL connected: pool_size={self.pool_size}")

    async def disconnect(self) -> None:
        """Close PostgreSQL connection pool."""
        async with self._lock:
            if self._pool:
                try:
                    await self._pool.close()
                except Exception as e:
                    logger.warning(f"Error closing PostgreSQL pool: {e}")
                finally:
                    self._pool = None

    async def health_check(self) -> Dict[str, Any]:
        if not self._pool:
            return {"status": "disconnected"}
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"status": "connected", "pool_size": self._pool.get_size()}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"status": "error", "error": str(e)}

    # === Query Operations ===

    async def execute(self, query: str, *args) -> str:
        """Execute a query that doesn't return results (INSERT, UPDATE, DELETE).

        Returns:
            Status string (e.g., "DELETE 1")
        """
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch multiple rows as list of dicts."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row as dict."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Connection with an open transaction.

        Usage:
            async with db.transaction() as conn:
                await conn.execute(...)
                await conn.execute(...)
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn


def _chat_from_row(row: Dict[str, Any], messages: Optional[List[Message]] = None) -> Chat:
    return Chat(
        id=row["id"],
        title=row["title"],
        owner_id=row["user_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        messages=messages or [],
    )


def _message_from_row(row: Dict[str, Any]) -> Message:
    metadata = row.get("metadata")
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Message(
        id=row["id"],
        chat_id=row["chat_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        created_at=row["created_at"],
        metadata=metadata or None,
    )


class PostgresConversationStore(ConversationStore):
    """ConversationStore backed by PostgreSQL through DatabaseManager."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def init(self) -> None:
        await self.db.connect()

    async def close(self) -> None:
        await self.db.disconnect()

    async def ping(self) -> bool:
        return (await self.db.health_check()).get("status") == "connected"

    async def create_chat(self, owner_id: str, title: Optional[str] = None) -> Chat:
        row = await self.db.fetchrow(
            "INSERT INTO chats (id, user_id, title) VALUES ($1, $2, $3) RETURNING *",
            str(uuid.uuid4()),
            owner_id,
            (title or "").strip() or DEFAULT_CHAT_TITLE,
        )
        return _chat_from_row(row)

    async def list_chats(self, owner_id: str) -> List[Chat]:
        rows = await self.db.fetch(
            "SELECT * FROM chats WHERE user_id = $1 ORDER BY updated_at DESC",
            owner_id,
        )
        return [_chat_from_row(r) for r in rows]

    async def get_chat(self, chat_id: str, owner_id: Optional[str] = None, limit: Optional[int] = None) -> Optional[Chat]:
        row = await self.db.fetchrow("SELECT * FROM chats WHERE id = $1", chat_id)
        if row is None or (owner_id is not None and row["user_id"] != owner_id):
            return None
        return _chat_from_row(row, await self.get_messages(chat_id, limit))

    async def update_title(self, chat_id: str, owner_id: str, title: str) -> Optional[Chat]:
        row = await self.db.fetchrow(
            "UPDATE chats SET title = $3, updated_at = NOW() WHERE id = $1 AND user_id = $2 RETURNING *",
            chat_id,
            owner_id,
            title,
        )
        return _chat_from_row(row) if row else None

    async def delete_chat(self, chat_id: str, owner_id: str) -> bool:
        status = await self.db.execute(
            "DELETE FROM chats WHERE id = $1 AND user_id = $2",
            chat_id,
            owner_id,
        )
        return status.endswith(" 1")

    async def add_message(
        self,
        chat_id: str,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        async with self.db.transaction() as conn:
            # Row lock serializes appends to one chat
            chat = await conn.fetchrow("SELECT id FROM chats WHERE id = $1 FOR UPDATE", chat_id)
            if chat is None:
                raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
            last = await conn.fetchval("SELECT MAX(created_at) FROM messages WHERE chat_id = $1", chat_id)
            created_at = next_timestamp(last, utcnow())
            row = await conn.fetchrow(
                """
                INSERT INTO messages (id, chat_id, role, content, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                RETURNING *
                """,
                generate_message_id(),
                chat_id,
                role.value,
                content,
                json.dumps(metadata) if metadata else None,
                created_at,
            )
            await conn.execute(
                "UPDATE chats SET updated_at = GREATEST(updated_at, $2) WHERE id = $1",
                chat_id,
                created_at,
            )
        return _message_from_row(dict(row))

    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Message]:
        if limit:
            rows = await self.db.fetch(
                """
                SELECT * FROM (
                    SELECT * FROM messages WHERE chat_id = $1 ORDER BY created_at DESC LIMIT $2
                ) recent ORDER BY created_at ASC
                """,
                chat_id,
                limit,
            )
        else:
            rows = await self.db.fetch(
                "SELECT * FROM messages WHERE chat_id = $1 ORDER BY created_at ASC",
                chat_id,
            )
        return [_message_from_row(r) for r in rows]

