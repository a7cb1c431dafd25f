"""
Parley Chat Streaming - Server-Sent Events framing

Each orchestrator event dict is written as one SSE frame (a data line
followed by a blank line):

    data: {"type": "chunk", "content": "..."}
    data: {"type": "done", "message": {...}}
    data: {"type": "error", "error": "...", "chatId": "..."}
"""

import json
from typing import Any, AsyncIterator, Dict

from fastapi.responses import StreamingResponse

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Disable proxy buffering (nginx) so chunks arrive as produced
    "X-Accel-Buffering": "no",
}


def sse_event(payload: Dict[str, Any]) -> str:
    """Frame one event as an SSE data line."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def _frames(events: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield sse_event(event)
    finally:
        await events.aclose()


def stream_events(events: AsyncIterator[Dict[str, Any]]) -> StreamingResponse:
    """Wrap an orchestrator event generator in an SSE response."""
    return StreamingResponse(_frames(events), media_type="text/event-stream", headers=SSE_HEADERS)
