"""
Parley Logging Configuration - color-coded console logs

Provides:
- ColorFormatter: ANSI colored level tags, plain text when colors are off
- Event helpers: log_message_in, log_message_out, log_tool, log_llm, log_stream
- setup_logging(): configure the root logger once at startup

Colors are dropped when NO_COLOR is set or stdout is not a terminal, so
container log collectors receive clean text. LOG_LEVEL overrides the level.

Usage:
    from logging_config import setup_logging, log_message_in
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "What is 2+2?", chat_id="abc", stream=True)
"""

import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Message preview length for incoming user text
PREVIEW_CHARS = 80

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"

# Event tag -> color
EVENT_COLORS = {
    "MESSAGE": "\033[96m",  # cyan
    "RESPONSE": "\033[92m",  # green
    "STREAM": "\033[95m",  # magenta
    "TOOL": "\033[93m",  # yellow
    "LLM": "\033[94m",  # blue
}

LEVEL_COLORS = {
    logging.DEBUG: "\033[90m",
    logging.INFO: RESET,
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[91m" + BOLD,
}

_use_color = True


def _colors_enabled() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _tag(event: str, arrow: str = "") -> str:
    label = f"{arrow} {event}".strip()
    if not _use_color:
        return label
    return f"{EVENT_COLORS.get(event, RESET)}{label}{RESET}"


def _context(context: Dict[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items() if v is not None)


class ColorFormatter(logging.Formatter):
    """timestamp [LEVL] message, with the logger name on warnings and above."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]
        message = record.getMessage()
        if record.levelno >= logging.WARNING:
            message = f"{record.name}: {message}"

        if self.use_color:
            color = LEVEL_COLORS.get(record.levelno, RESET)
            formatted = f"{DIM}{timestamp}{RESET} [{color}{level}{RESET}] {message}"
        else:
            formatted = f"{timestamp} [{level}] {message}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logging(level: Optional[int] = None) -> None:
    """Configure the root logger. LOG_LEVEL (e.g. DEBUG) wins over the argument."""
    global _use_color
    _use_color = _colors_enabled()

    env_level = os.environ.get("LOG_LEVEL", "").strip().upper()
    resolved = getattr(logging, env_level, None) if env_level else None
    if not isinstance(resolved, int):
        resolved = level if level is not None else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=_use_color))

    root = logging.getLogger()
    root.setLevel(resolved)
    root.handlers = [handler]

    # Client libraries log every request at INFO
    for name in ("httpx", "httpcore", "openai", "mcp", "asyncpg", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# EVENT HELPERS
# =============================================================================


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Log an incoming user message (preview only).

    Args:
        logger: Logger instance
        message: User message text
        **context: chat_id, anonymous, stream, model
    """
    flat = " ".join(message.split())
    preview = flat[:PREVIEW_CHARS] + "..." if len(flat) > PREVIEW_CHARS else flat
    logger.info(f"{_tag('MESSAGE', '>>>')} {preview} [{_context(context)}]")


def log_message_out(
    logger: logging.Logger,
    chat_id: str,
    chars: int = 0,
    tools_used: Optional[List[str]] = None,
) -> None:
    """Log a persisted assistant message."""
    tools = ", ".join(tools_used) if tools_used else "none"
    logger.info(f"{_tag('RESPONSE', '<<<')} chat={chat_id} chars={chars} tools=[{tools}]")


def log_tool(logger: logging.Logger, tool_name: str, state: str, **context) -> None:
    """Log an MCP tool call boundary.

    Args:
        state: "start" before the call, anything else after it
        **context: attempt, status, chars
    """
    arrow = ">>>" if state == "start" else "<<<"
    logger.info(f"{_tag('TOOL', arrow)} {tool_name} {_context(context)}".rstrip())


def log_llm(logger: logging.Logger, state: str, model: str = "", duration: float = 0) -> None:
    if state == "start":
        logger.info(f"{_tag('LLM', '>>>')} calling {model}")
    else:
        logger.info(f"{_tag('LLM', '<<<')} {model} completed in {duration:.1f}s")


def log_stream(logger: logging.Logger, chat_id: str, fragments: int, chars: int, elapsed: float) -> None:
    """Log throughput once a stream finishes."""
    rate = chars / elapsed if elapsed > 0 else 0
    logger.info(
        f"{_tag('STREAM')} chat={chat_id} {fragments} fragments, "
        f"{chars} chars in {elapsed:.2f}s ({rate:.0f} char/s)"
    )
