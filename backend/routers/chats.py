"""
Parley Chats Router - durable chats for authenticated callers

Endpoints (all require a bearer token):
- POST   /api/chats                          create (optional initialMessage)
- GET    /api/chats                          list, newest activity first
- POST   /api/chats/migrate                  adopt anonymous chats
- GET    /api/chats/{chat_id}?limit=N|all    fetch with recent messages
- PUT    /api/chats/{chat_id}                rename
- DELETE /api/chats/{chat_id}                delete
- POST   /api/chats/{chat_id}/messages        send (REST)
- POST   /api/chats/{chat_id}/messages/stream send (SSE)
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from config import runtime_config
from errors import BadRequestError, NotFoundError, success_response
from routers.chat_orchestration import ChatOrchestrator
from routers.chat_streaming import stream_events
from services.auth import Caller, require_caller
from services.chat_store import ConversationStore
from utils.deps import get_orchestrator, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chats", tags=["chats"])


class CreateChatRequest(BaseModel):
    title: Optional[str] = None
    initialMessage: Optional[str] = None
    model: Optional[str] = None


class UpdateChatRequest(BaseModel):
    title: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: Optional[str] = None
    model: Optional[str] = None


class MigrateChatsRequest(BaseModel):
    chats: List[Dict[str, Any]] = []


def parse_limit(raw: Optional[str], default: int) -> Optional[int]:
    """Resolve the history limit query parameter.

    Missing means the default; "0" or "all" means unlimited (None).

    Raises:
        BadRequestError: anything that is not a non-negative integer or "all"
    """
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value == "all":
        return None
    try:
        limit = int(value)
    except ValueError:
        raise BadRequestError(
            "limit must be a positive integer, 0, or 'all'", parameter="limit", received=raw
        ) from None
    if limit < 0:
        raise BadRequestError("limit must be a positive integer, 0, or 'all'", parameter="limit", received=raw)
    return limit or None


@router.post("", status_code=201)
async def create_chat(
    body: CreateChatRequest,
    caller: Caller = Depends(require_caller),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    chat = await orchestrator.create_chat(caller, body.title, body.initialMessage, body.model)
    return success_response(chat)


@router.get("")
async def list_chats(
    caller: Caller = Depends(require_caller),
    store: ConversationStore = Depends(get_store),
):
    chats = await store.list_chats(caller.user_id)
    return success_response([c.to_dict(include_messages=False) for c in chats])


@router.post("/migrate")
async def migrate_chats(
    body: MigrateChatsRequest,
    caller: Caller = Depends(require_caller),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Adopt anonymous chats into the caller's account after sign-in."""
    result = await orchestrator.migrate_chats(caller, body.chats)
    logger.info(f"Migrated {len(result['migratedChats'])}/{len(body.chats)} chats for user {caller.user_id}")
    return success_response(result)


@router.get("/{chat_id}")
async def get_chat(
    chat_id: str,
    limit: Optional[str] = Query(None),
    caller: Caller = Depends(require_caller),
    store: ConversationStore = Depends(get_store),
):
    chat = await store.get_chat(
        chat_id, owner_id=caller.user_id, limit=parse_limit(limit, runtime_config.history_default_limit)
    )
    if chat is None:
        raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
    return success_response(chat.to_dict())


@router.put("/{chat_id}")
async def update_chat(
    chat_id: str,
    body: UpdateChatRequest,
    caller: Caller = Depends(require_caller),
    store: ConversationStore = Depends(get_store),
):
    title = (body.title or "").strip()
    if not title:
        raise BadRequestError("Title is required", parameter="title", received=body.title)
    chat = await store.update_title(chat_id, caller.user_id, title)
    if chat is None:
        raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
    return success_response(chat.to_dict(include_messages=False))


@router.delete("/{chat_id}")
async def delete_chat(
    chat_id: str,
    caller: Caller = Depends(require_caller),
    store: ConversationStore = Depends(get_store),
):
    if not await store.delete_chat(chat_id, caller.user_id):
        raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
    logger.info(f"Chat deleted: {chat_id} user={caller.user_id}")
    return success_response({"id": chat_id, "deleted": True})


@router.post("/{chat_id}/messages")
async def send_message(
    chat_id: str,
    body: SendMessageRequest,
    caller: Caller = Depends(require_caller),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.send_message(caller, chat_id, body.content, body.model)
    return success_response(result)


@router.post("/{chat_id}/messages/stream")
async def stream_message(
    chat_id: str,
    body: SendMessageRequest,
    request: Request,
    caller: Caller = Depends(require_caller),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    return stream_events(
        orchestrator.stream_message(caller, chat_id, body.content, body.model, request.is_disconnected)
    )
