"""
Parley Chat Session - Chat and message records

Dataclasses shared by the durable store, the ephemeral registry and the
orchestrator. to_dict() produces the camelCase wire shape.
"""

import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

DEFAULT_CHAT_TITLE = "New Chat"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return utcnow()


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def generate_anonymous_chat_id() -> str:
    return f"anonymous_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """Creation time for a new message, strictly after the previous one.

    Two appends inside the same clock tick would otherwise share a timestamp
    and lose their ordering.
    """
    now = now or utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


@dataclass(frozen=True)
class Message:
    """A single persisted chat message. Immutable once created."""

    id: str
    chat_id: str
    role: MessageRole
    content: str
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": to_iso(self.created_at),
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data.get("id") or generate_message_id(),
            chat_id=data.get("chatId", ""),
            role=MessageRole(data.get("role", "user")),
            content=data.get("content", ""),
            created_at=_parse_ts(data.get("createdAt")),
            metadata=data.get("metadata") or None,
        )


@dataclass
class Chat:
    """A conversation and its ordered messages.

    Attributes:
        id: Chat id (UUID for durable chats, anonymous_<ts>_<rand> for ephemeral)
        title: Display title
        owner_id: Owning user id, None for ephemeral chats
        created_at: Creation time
        updated_at: Bumped on every message append
        messages: Messages in strictly increasing created_at order
    """

    id: str
    title: str = DEFAULT_CHAT_TITLE
    owner_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    messages: List[Message] = field(default_factory=list)

    @property
    def is_ephemeral(self) -> bool:
        return self.owner_id is None

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def append(
        self,
        role: MessageRole,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        """Append a new message, keeping creation order strict and bumping updated_at."""
        previous = self.last_message.created_at if self.messages else None
        message = Message(
            id=generate_message_id(),
            chat_id=self.id,
            role=role,
            content=content,
            created_at=next_timestamp(previous, now),
            metadata=metadata,
        )
        self.messages.append(message)
        self.updated_at = max(self.updated_at, message.created_at)
        return message

    def snapshot(self, limit: Optional[int] = None) -> "Chat":
        """Copy safe to hand out while the original keeps mutating."""
        messages = self.messages[-limit:] if limit else self.messages
        return replace(self, messages=list(messages))

    def to_dict(self, include_messages: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }
        if self.owner_id is not None:
            data["userId"] = self.owner_id
        if include_messages:
            data["messages"] = [m.to_dict() for m in self.messages]
        return data


@dataclass
class StreamingSession:
    """Accumulated text for one outgoing stream.

    Builds the assistant message persisted when the stream concludes,
    or the partial record kept when the caller disconnects.
    """

    chat_id: str
    parts: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.monotonic)

    def add(self, fragment: str) -> None:
        self.parts.append(fragment)

    @property
    def text(self) -> str:
        return "".join(self.parts)

    @property
    def fragments(self) -> int:
        return len(self.parts)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started
