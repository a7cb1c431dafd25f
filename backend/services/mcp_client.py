"""
MCP Tool Provider - remote tools over the MCP streamable HTTP transport.

Features:
- One MCP session per provider, opened lazily on first use
- Delegated credential sent as a Bearer token
- Tool discovery via session.list_tools()
- Tool execution via session.call_tool(), text blocks joined into one result
- Deliberate per-call timeout; a timeout is a tool failure like any other

A provider is created per request (the credential belongs to the caller),
so it must be closed with aclose() when the request is done.
"""

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from config import runtime_config

logger = logging.getLogger(__name__)


class MCPToolError(Exception):
    """A tool call failed, returned an error result, or timed out."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)


@dataclass
class MCPToolInfo:
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)


def build_tools_context(tools: List[MCPToolInfo]) -> str:
    """Describe the available tools for inclusion in an LLM prompt."""
    if not tools:
        return "No MCP tools are currently available."

    lines = ["You have access to the following MCP tools:", ""]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description or 'No description'}")
        properties = tool.input_schema.get("properties") or {}
        required = set(tool.input_schema.get("required") or [])
        for param, schema in properties.items():
            kind = schema.get("type", "any")
            marker = " (required)" if param in required else ""
            desc = schema.get("description", "")
            lines.append(f"    {param} [{kind}]{marker} {desc}".rstrip())
    return "\n".join(lines)


class MCPToolProvider:
    """Client for a single MCP server on behalf of one caller."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 30.0):
        """
        Args:
            url: MCP streamable HTTP endpoint
            token: Delegated credential, sent as Authorization: Bearer
            timeout: Seconds allowed for connect, listing and each tool call
        """
        self.url = url
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None
        self._tools: Optional[List[MCPToolInfo]] = None

    async def _get_session(self) -> ClientSession:
        if self._session is not None:
            return self._session

        stack = AsyncExitStack()
        try:
            read, write, _ = await stack.enter_async_context(
                streamablehttp_client(self.url, headers=self._headers)
            )
            session = await stack.enter_async_context(ClientSession(read, write))
            await asyncio.wait_for(session.initialize(), timeout=self.timeout)
        except BaseException:
            await stack.aclose()
            raise

        self._stack = stack
        self._session = session
        logger.debug(f"MCP session opened: {self.url}")
        return session

    async def list_tools(self) -> List[MCPToolInfo]:
        """Discover tools (cached for the provider's lifetime)."""
        if self._tools is None:
            session = await self._get_session()
            result = await asyncio.wait_for(session.list_tools(), timeout=self.timeout)
            self._tools = [
                MCPToolInfo(
                    name=tool.name,
                    description=getattr(tool, "description", "") or "",
                    input_schema=getattr(tool, "inputSchema", {}) or {},
                )
                for tool in result.tools
            ]
        return list(self._tools)

    async def call_tool(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Call a tool and return its text output.

        Raises:
            MCPToolError: the call timed out, raised, or returned isError
        """
        try:
            session = await self._get_session()
            result = await asyncio.wait_for(
                session.call_tool(tool_name, arguments or {}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise MCPToolError(tool_name, f"Tool {tool_name} timed out after {self.timeout:.0f}s") from None
        except MCPToolError:
            raise
        except Exception as e:
            raise MCPToolError(tool_name, str(e) or e.__class__.__name__) from e

        texts = [block.text for block in result.content if hasattr(block, "text")]
        output = "\n".join(texts)
        if getattr(result, "isError", False):
            raise MCPToolError(tool_name, output or f"Tool {tool_name} returned an error")
        if not output and getattr(result, "structuredContent", None):
            output = json.dumps(result.structuredContent)
        return output or "(no output)"

    async def get_status(self) -> Dict[str, Any]:
        """Connectivity summary for the status endpoint. Never raises."""
        try:
            tools = await self.list_tools()
            return {"connected": True, "serverUrl": self.url, "toolCount": len(tools), "tools": [t.name for t in tools]}
        except Exception as e:
            logger.warning(f"MCP status check failed: {e}")
            return {"connected": False, "serverUrl": self.url, "toolCount": 0, "tools": [], "error": str(e)}

    async def aclose(self) -> None:
        if self._stack is not None:
            try:
                await self._stack.aclose()
            except Exception as e:
                logger.debug(f"Error closing MCP session: {e}")
        self._stack = None
        self._session = None


def make_tool_provider(token: Optional[str] = None, config=None) -> Optional[MCPToolProvider]:
    """Provider for one request, or None when tools are off for this caller.

    With OAuth enabled a delegated credential is mandatory; without it tools
    run unauthenticated.
    """
    config = config or runtime_config
    if not config.mcp_enabled:
        return None
    if config.mcp_oauth_enabled and not token:
        logger.debug("MCP disabled for request: OAuth is enabled but no token provided")
        return None
    return MCPToolProvider(
        config.mcp_server_url,
        token=token if config.mcp_oauth_enabled else None,
        timeout=config.mcp_tool_timeout,
    )
