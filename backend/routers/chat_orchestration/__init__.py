"""
Parley Chat Orchestration - chat turn pipeline components

Components:
- Chat / Message / StreamingSession: Records shared by stores and the registry
- extract_tool_calls / ToolInvocationLoop: TOOL_CALL parsing and the
  self-correcting tool loop
- ChatOrchestrator: One user turn, REST or SSE, durable or anonymous

Pipeline:
    validate -> authorize -> persist user message -> generate
        -> persist assistant message -> respond

    REST generation tries the tool loop first when the caller has tool
    access; any tool loop failure falls back to a plain completion.
    SSE generation streams fragments directly and never uses tools.
"""

from .session import (
    DEFAULT_CHAT_TITLE,
    Chat,
    Message,
    MessageRole,
    StreamingSession,
    generate_anonymous_chat_id,
    generate_message_id,
    next_timestamp,
    utcnow,
)
from .tool_dispatch import ToolCall, ToolInvocationLoop, ToolLoopResult, extract_tool_calls
from .orchestrator import ChatOrchestrator, OrchestratorState

__all__ = [
    "DEFAULT_CHAT_TITLE",
    "Chat",
    "Message",
    "MessageRole",
    "StreamingSession",
    "generate_anonymous_chat_id",
    "generate_message_id",
    "next_timestamp",
    "utcnow",
    "ToolCall",
    "ToolInvocationLoop",
    "ToolLoopResult",
    "extract_tool_calls",
    "ChatOrchestrator",
    "OrchestratorState",
]
