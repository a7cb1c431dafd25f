"""
Parley Tool Dispatcher - Tool directive parsing and the self-correcting tool loop

Handles:
- Parsing TOOL_CALL:<name>:<json-object> directives from model text
  (string-aware brace matching, malformed directives logged and skipped)
- Executing tool calls in order against a tool provider
- Asking the model to interpret labeled tool results
- Bounded correction cycle: on a tool failure the model is shown the failing
  call and error and asked for a corrected directive (or ERROR_UNABLE_TO_FIX)

The loop is an explicit state machine (EXECUTE -> CORRECT -> EXECUTE ...)
with the attempt counter as state, so it always terminates. Giving up raises
ToolExecutionError; callers fall back to a plain completion.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from errors import ToolExecutionError, UpstreamError, format_error_for_llm
from logging_config import log_tool
from routers.chat_prompts import (
    GIVE_UP_MARKER,
    TOOL_CALL_PREFIX,
    build_correction_prompt,
    build_tool_prompt,
    build_tool_results_prompt,
)
from services.mcp_client import build_tools_context
from .session import Message, MessageRole, generate_message_id, utcnow

logger = logging.getLogger(__name__)

_MARKER = re.compile(TOOL_CALL_PREFIX + r":([A-Za-z0-9_.\-]+):")


@dataclass
class ToolCall:
    """A directive parsed from model output. Never persisted."""

    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


def _match_json_object(text: str, start: int) -> Optional[int]:
    """End index (exclusive) of the JSON object opening at text[start].

    Braces inside string literals are ignored, honouring backslash escapes.
    Returns None when the object never closes.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_tool_calls(text: str) -> List[ToolCall]:
    """Parse every TOOL_CALL directive in order of appearance.

    Never raises: directives without an opening brace, with unbalanced braces,
    or with invalid JSON are logged and skipped.

    Args:
        text: Raw model output

    Returns:
        Parsed tool calls (possibly empty)
    """
    calls: List[ToolCall] = []
    if not text:
        return calls

    pos = 0
    while True:
        match = _MARKER.search(text, pos)
        if match is None:
            break
        name = match.group(1)
        json_start = match.end()
        while json_start < len(text) and text[json_start].isspace():
            json_start += 1
        pos = match.end()

        if json_start >= len(text) or text[json_start] != "{":
            logger.warning(f"Skipping tool call {name}: no opening brace found")
            continue

        json_end = _match_json_object(text, json_start)
        if json_end is None:
            logger.warning(f"Skipping tool call {name}: unmatched braces")
            continue

        raw = text[json_start:json_end]
        pos = json_end
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping tool call {name}: invalid JSON ({e}): {raw[:200]}")
            continue
        if not isinstance(arguments, dict):
            logger.warning(f"Skipping tool call {name}: arguments are not an object")
            continue

        calls.append(ToolCall(tool_name=name, arguments=arguments))
    return calls


def _prompt_turn(history: Sequence[Message], content: str) -> List[Message]:
    """History plus a transient user turn (never persisted)."""
    chat_id = history[-1].chat_id if history else ""
    turn = Message(
        id=generate_message_id(),
        chat_id=chat_id,
        role=MessageRole.USER,
        content=content,
        created_at=utcnow(),
    )
    return [*history, turn]


class LoopState(Enum):
    EXECUTE = "execute"
    CORRECT = "correct"


class _ToolFailure(Exception):
    def __init__(self, call: ToolCall, error: Exception):
        self.call = call
        self.error = error
        super().__init__(str(error))


@dataclass
class ToolLoopResult:
    content: str
    tools_used: List[str] = field(default_factory=list)
    corrections: int = 0


class ToolInvocationLoop:
    """Lets the model call tools, then answers from their results.

    Only the first failing call of a batch drives the correction prompt; the
    other calls of that batch are dropped in favour of the corrected directive.
    """

    def __init__(self, gateway, provider, max_corrections: int = 2):
        """
        Args:
            gateway: LLMGateway (complete() is used for every turn)
            provider: Tool provider exposing list_tools() and call_tool()
            max_corrections: Correction attempts after the first execution
        """
        self.gateway = gateway
        self.provider = provider
        self.max_corrections = max_corrections

    async def run(self, message: str, history: Sequence[Message], model: Optional[str] = None) -> ToolLoopResult:
        """Answer `message` with optional tool use.

        Args:
            message: The user's message text
            history: Chat history ending with that message
            model: Model for every turn of the loop

        Returns:
            ToolLoopResult with the final text

        Raises:
            ToolExecutionError: tools unavailable, model gave up, or budget exhausted
        """
        try:
            return await self._run(message, history, model)
        except UpstreamError as e:
            raise ToolExecutionError("LLM call failed inside tool loop", details=str(e)) from e

    async def _run(self, message: str, history: Sequence[Message], model: Optional[str]) -> ToolLoopResult:
        try:
            tools = await self.provider.list_tools()
        except Exception as e:
            raise ToolExecutionError("Could not list MCP tools", details=format_error_for_llm(e)) from e

        tools_context = build_tools_context(tools)
        response = await self.gateway.complete(
            _prompt_turn(history, build_tool_prompt(tools_context, message)), model
        )

        calls = extract_tool_calls(response.content)
        if not calls:
            return ToolLoopResult(content=response.content)

        state = LoopState.EXECUTE
        attempt = 0
        failure: Optional[_ToolFailure] = None

        while True:
            if state is LoopState.EXECUTE:
                try:
                    results = await self._execute(calls, attempt)
                except _ToolFailure as f:
                    logger.warning(
                        f"Tool execution failed (attempt {attempt + 1}/{self.max_corrections + 1}): "
                        f"{f.call.tool_name}: {f.error}"
                    )
                    if attempt >= self.max_corrections:
                        raise ToolExecutionError(
                            "MCP tool execution failed after maximum retry attempts",
                            details=format_error_for_llm(f.error),
                            tool=f.call.tool_name,
                            attempts=attempt + 1,
                        ) from f.error
                    failure = f
                    state = LoopState.CORRECT
                    continue

                final = await self.gateway.complete(
                    _prompt_turn(history, build_tool_results_prompt(message, results)), model
                )
                return ToolLoopResult(
                    content=final.content,
                    tools_used=[c.tool_name for c in calls],
                    corrections=attempt,
                )

            # LoopState.CORRECT
            calls = await self._request_correction(failure, tools_context, message, history, model, attempt)
            attempt += 1
            state = LoopState.EXECUTE

    async def _execute(self, calls: List[ToolCall], attempt: int) -> List[str]:
        results = []
        for call in calls:
            log_tool(logger, call.tool_name, "start", attempt=attempt)
            try:
                output = await self.provider.call_tool(call.tool_name, call.arguments)
            except Exception as e:
                log_tool(logger, call.tool_name, "end", status="error")
                raise _ToolFailure(call, e) from e
            log_tool(logger, call.tool_name, "end", status="ok", chars=len(output))
            results.append(f"Tool {call.tool_name}: {output}")
        return results

    async def _request_correction(
        self,
        failure: _ToolFailure,
        tools_context: str,
        message: str,
        history: Sequence[Message],
        model: Optional[str],
        attempt: int,
    ) -> List[ToolCall]:
        logger.info(f"Attempting tool call auto-correction with LLM (attempt {attempt + 1})")
        prompt = build_correction_prompt(
            tools_context,
            message,
            failure.call.tool_name,
            failure.call.arguments,
            format_error_for_llm(failure.error),
        )
        correction = await self.gateway.complete(_prompt_turn(history, prompt), model)

        if GIVE_UP_MARKER in correction.content:
            raise ToolExecutionError(
                "LLM was unable to correct the MCP tool call arguments",
                tool=failure.call.tool_name,
                attempts=attempt + 1,
            )

        corrected = extract_tool_calls(correction.content)
        if not corrected:
            raise ToolExecutionError(
                "LLM did not provide a corrected tool call",
                tool=failure.call.tool_name,
                attempts=attempt + 1,
            )

        logger.info(f"LLM provided corrected tool call: {corrected[0].tool_name} {corrected[0].arguments}")
        return corrected
