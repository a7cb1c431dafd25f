"""
Parley - chat backend between users, an LLM and optional MCP tools
FastAPI application: durable chats, anonymous chats, SSE streaming
"""

from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import runtime_config
from errors import register_exception_handlers
from logging_config import setup_logging
from middleware.rate_limit import RateLimitMiddleware
from routers import anonymous, chats, health
from utils.deps import get_gateway, get_registry, get_store

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown events"""
    # Startup
    store = get_store()
    await store.init()
    logger.info(f"Conversation store ready: {store.__class__.__name__}")

    registry = get_registry()
    registry.start()

    gateway = get_gateway()
    logger.info(
        f"LLM gateway ready: default={gateway.current_model} "
        f"available={','.join(gateway.available_models)}"
    )
    if runtime_config.mcp_enabled:
        logger.info(
            f"MCP tools enabled: {runtime_config.mcp_server_url} "
            f"(oauth={'required' if runtime_config.mcp_oauth_enabled else 'off'})"
        )
    else:
        logger.info("MCP tools disabled (set MCP_ENABLED=true to enable)")

    yield

    # Shutdown
    await registry.stop()

    try:
        await gateway.close()
    except Exception as e:
        logger.debug(f"LLM client close error: {e}")

    try:
        await store.close()
        logger.info("Conversation store closed")
    except Exception as e:
        logger.debug(f"Store close error: {e}")

    logger.info("Parley signing off")


app = FastAPI(
    title="Parley",
    description="Chat backend with streaming responses and MCP tools",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)

# Rate limiting middleware (in-process fixed window)
app.add_middleware(RateLimitMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=runtime_config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Routers (each carries its own /api prefix)
app.include_router(chats.router)
app.include_router(anonymous.router)
app.include_router(health.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3001")))
