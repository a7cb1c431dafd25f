"""
Parley Health Router - liveness and upstream connectivity checks

- GET /api/health     status, timestamp, uptime, anonymous chat count, store
- GET /api/test/llm   one round trip to the LLM plus the model allow-list
- GET /api/mcp/status MCP enablement and reachability for the caller
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends

from config import runtime_config
from errors import success_response
from routers.chat_orchestration.session import to_iso, utcnow
from services.auth import Caller, optional_caller
from services.chat_store import ConversationStore
from services.ephemeral_chats import EphemeralChatRegistry
from services.llm_client import LLMGateway
from services.mcp_client import make_tool_provider
from utils.deps import get_gateway, get_registry, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])

_started = time.monotonic()


@router.get("/health")
async def health(
    registry: EphemeralChatRegistry = Depends(get_registry),
    store: ConversationStore = Depends(get_store),
):
    """Liveness plus a store ping. Never fails on a degraded dependency."""
    try:
        store_ok = await store.ping()
    except Exception as e:
        logger.warning(f"Store ping failed: {e}")
        store_ok = False

    return {
        "status": "OK" if store_ok else "DEGRADED",
        "timestamp": to_iso(utcnow()),
        "uptime": round(time.monotonic() - _started, 3),
        "anonymousChats": len(registry),
        "store": "ok" if store_ok else "down",
        "environment": runtime_config.parley_env,
    }


@router.get("/test/llm")
async def test_llm(gateway: LLMGateway = Depends(get_gateway)):
    connected = await gateway.test_connectivity()
    return success_response(
        {
            "connected": connected,
            "model": gateway.current_model,
            "availableModels": gateway.available_models,
        }
    )


@router.get("/mcp/status")
async def mcp_status(caller: Optional[Caller] = Depends(optional_caller)):
    """MCP reachability using the caller's delegated credential, when required."""
    if not runtime_config.mcp_enabled:
        return success_response({"enabled": False, "connected": False, "tools": []})

    provider = make_tool_provider(caller.oauth_token if caller else None)
    if provider is None:
        return success_response(
            {
                "enabled": True,
                "connected": False,
                "tools": [],
                "reason": "OAuth token required",
            }
        )

    try:
        status = await provider.get_status()
    finally:
        await provider.aclose()
    return success_response({"enabled": True, **status})
