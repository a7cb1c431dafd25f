"""
Parley Anonymous Chats Router - ephemeral chats, no authentication

Anonymous chats live in process memory until they expire or are migrated
into a signed-in user's account via POST /api/chats/migrate.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from errors import NotFoundError, success_response
from routers.chat_orchestration import ChatOrchestrator
from routers.chat_streaming import stream_events
from services.ephemeral_chats import EphemeralChatRegistry
from utils.deps import get_orchestrator, get_registry

router = APIRouter(prefix="/api/anonymous/chats", tags=["anonymous"])


class CreateAnonymousChatRequest(BaseModel):
    title: Optional[str] = None
    initialMessage: Optional[str] = None
    model: Optional[str] = None


class AnonymousMessageRequest(BaseModel):
    content: Optional[str] = None
    model: Optional[str] = None


@router.post("", status_code=201)
async def create_anonymous_chat(
    body: CreateAnonymousChatRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    chat = await orchestrator.create_anonymous_chat(body.title, body.initialMessage, body.model)
    return success_response(chat)


@router.get("/{chat_id}")
async def get_anonymous_chat(chat_id: str, registry: EphemeralChatRegistry = Depends(get_registry)):
    chat = registry.get(chat_id)
    if chat is None:
        raise NotFoundError("Anonymous chat not found", resource_type="anonymous_chat", resource_id=chat_id)
    return success_response(chat.to_dict())


@router.post("/{chat_id}/messages")
async def send_anonymous_message(
    chat_id: str,
    body: AnonymousMessageRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.send_anonymous_message(chat_id, body.content, body.model)
    return success_response(result)


@router.post("/{chat_id}/messages/stream")
async def stream_anonymous_message(
    chat_id: str,
    body: AnonymousMessageRequest,
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    return stream_events(
        orchestrator.stream_anonymous_message(chat_id, body.content, body.model, request.is_disconnected)
    )
