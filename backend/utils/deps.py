"""Process-wide service singletons and their FastAPI dependency getters."""

import logging
from typing import Optional

from config import runtime_config
from routers.chat_orchestration import ChatOrchestrator
from routers.chat_prompts import MODEL_ACKNOWLEDGEMENT, SYSTEM_INSTRUCTION
from services.chat_store import ConversationStore, InMemoryConversationStore
from services.ephemeral_chats import EphemeralChatRegistry
from services.llm_client import LLMGateway

logger = logging.getLogger(__name__)

_gateway: Optional[LLMGateway] = None
_store: Optional[ConversationStore] = None
_registry: Optional[EphemeralChatRegistry] = None
_orchestrator: Optional[ChatOrchestrator] = None


def get_gateway() -> LLMGateway:
    """LLM gateway configured with the chart/map system instruction."""
    global _gateway
    if _gateway is None:
        _gateway = LLMGateway(
            config=runtime_config,
            system_instruction=SYSTEM_INSTRUCTION,
            acknowledgement=MODEL_ACKNOWLEDGEMENT,
        )
    return _gateway


def get_store() -> ConversationStore:
    """PostgreSQL store when DATABASE_URL is set, otherwise in-memory."""
    global _store
    if _store is None:
        if runtime_config.database_url:
            from services.database import DatabaseManager, PostgresConversationStore

            _store = PostgresConversationStore(
                DatabaseManager(url=runtime_config.database_url, pool_size=runtime_config.database_pool_size)
            )
        else:
            logger.warning("DATABASE_URL not set, durable chats are kept in memory only")
            _store = InMemoryConversationStore()
    return _store


def get_registry() -> EphemeralChatRegistry:
    global _registry
    if _registry is None:
        _registry = EphemeralChatRegistry(
            ttl_seconds=runtime_config.anonymous_chat_ttl,
            sweep_interval=runtime_config.anonymous_sweep_interval,
            expiry_basis=runtime_config.anonymous_expiry_basis,
        )
    return _registry


def get_orchestrator() -> ChatOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator(
            gateway=get_gateway(),
            store=get_store(),
            registry=get_registry(),
            config=runtime_config,
        )
    return _orchestrator


def reset_dependencies() -> None:
    """Forget every singleton (tests)."""
    global _gateway, _store, _registry, _orchestrator
    _gateway = None
    _store = None
    _registry = None
    _orchestrator = None
