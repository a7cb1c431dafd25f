"""
Shared pytest fixtures and fakes for the Parley backend tests.

Collaborators are faked at the seams the orchestrator depends on:
- FakeGateway: scripted complete() replies and stream_complete() fragments
- FakeToolProvider: in-memory MCP tools with scripted results or failures
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from config import RuntimeConfig
from errors import InvalidModelError, UpstreamError
from services.chat_store import InMemoryConversationStore
from services.ephemeral_chats import EphemeralChatRegistry
from services.llm_client import LLMResponse
from services.mcp_client import MCPToolError, MCPToolInfo

TEST_JWT_SECRET = "parley-test-secret-with-enough-bytes-for-hs256"


def make_config(**overrides) -> RuntimeConfig:
    """RuntimeConfig with test-friendly values, independent of the environment."""
    values = dict(
        llm_base_url="http://llm.test/v1/",
        llm_api_key="test-key",
        model_default="gemini-2.5-flash",
        models_available=["gemini-2.5-flash", "gemini-2.5-pro"],
        llm_retry_attempts=3,
        llm_retry_delay_ms=1000,
        mcp_enabled=False,
        mcp_oauth_enabled=False,
        mcp_max_corrections=2,
        anonymous_chat_ttl=3600,
        anonymous_sweep_interval=1800,
        anonymous_expiry_basis="created",
        history_default_limit=50,
        jwt_secret=TEST_JWT_SECRET,
        jwt_algorithm="HS256",
        database_url="",
        rate_limit_window=900,
        rate_limit_anonymous=50,
        rate_limit_general=1000,
    )
    values.update(overrides)
    return RuntimeConfig(**values)


class FakeGateway:
    """Scripted stand-in for LLMGateway.

    replies: consumed in order by complete(); an Exception entry is raised.
    fragments: yielded by stream_complete(); an Exception entry is raised there.
    """

    def __init__(
        self,
        replies: Optional[List[Any]] = None,
        fragments: Optional[List[Any]] = None,
        models: Optional[List[str]] = None,
    ):
        self.replies = list(replies or [])
        self.fragments = list(fragments or [])
        self.models = models or ["gemini-2.5-flash", "gemini-2.5-pro"]
        self.current_model = self.models[0]
        self.calls: List[Dict[str, Any]] = []
        self.stream_closed = False

    @property
    def available_models(self) -> List[str]:
        return list(self.models)

    def resolve_model(self, name: Optional[str] = None) -> str:
        if not name:
            return self.current_model
        if name not in self.models:
            raise InvalidModelError(name, self.models)
        return name

    async def complete(self, history, model=None) -> LLMResponse:
        self.calls.append({"history": list(history), "model": model})
        if not self.replies:
            raise UpstreamError("The AI service is temporarily unavailable.")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return LLMResponse(content=reply, model=model or self.current_model)

    async def stream_complete(self, history, model=None):
        self.calls.append({"history": list(history), "model": model, "stream": True})
        try:
            for fragment in self.fragments:
                await asyncio.sleep(0)
                if isinstance(fragment, BaseException):
                    raise fragment
                yield fragment
        finally:
            self.stream_closed = True

    async def test_connectivity(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@dataclass
class FakeToolProvider:
    """In-memory tool provider.

    results maps tool name -> list of outcomes consumed per call; an
    Exception outcome is raised as an MCPToolError.
    """

    tools: List[MCPToolInfo] = field(default_factory=lambda: [MCPToolInfo(name="search", description="Search")])
    results: Dict[str, List[Any]] = field(default_factory=dict)
    calls: List[tuple] = field(default_factory=list)
    closed: bool = False
    list_error: Optional[Exception] = None

    async def list_tools(self) -> List[MCPToolInfo]:
        if self.list_error:
            raise self.list_error
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        self.calls.append((name, arguments))
        outcomes = self.results.get(name) or ["ok"]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise MCPToolError(name, str(outcome))
        return outcome

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeCaller:
    user_id: str = "user-1"
    oauth_token: Optional[str] = None


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def registry():
    return EphemeralChatRegistry(ttl_seconds=3600, sweep_interval=1800)


@pytest.fixture
def caller():
    return FakeCaller()
