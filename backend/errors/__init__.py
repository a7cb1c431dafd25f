"""
Parley Error Handling Module

Provides standardized error codes, exceptions, and response envelopes
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        ParleyError,
        BadRequestError,
        UnauthorizedError,
        NotFoundError,
        InvalidModelError,
        UpstreamError,
        ToolExecutionError,
        InvalidHistoryStateError,
        RateLimitedError,

        # Response builders
        error_response,
        public_message,
        success_response,
        format_error_for_llm,

        # FastAPI integration
        register_exception_handlers,
        error_json,
        log_error,
    )

Example:
    from errors import BadRequestError, NotFoundError

    async def send(chat_id, content):
        if not content or not content.strip():
            raise BadRequestError("Message content is required", parameter="content")

        chat = await store.get_chat(chat_id, owner_id)
        if chat is None:
            raise NotFoundError("Chat not found", resource_type="chat", resource_id=chat_id)
"""

from .codes import ErrorCode, HTTP_STATUS
from .exceptions import (
    ParleyError,
    BadRequestError,
    UnauthorizedError,
    NotFoundError,
    InvalidModelError,
    UpstreamError,
    ToolExecutionError,
    InvalidHistoryStateError,
    RateLimitedError,
)
from .response import (
    GENERIC_ERROR_MESSAGE,
    public_message,
    error_response,
    success_response,
    format_error_for_llm,
)
from .handlers import (
    register_exception_handlers,
    error_json,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    "HTTP_STATUS",
    # Exceptions
    "ParleyError",
    "BadRequestError",
    "UnauthorizedError",
    "NotFoundError",
    "InvalidModelError",
    "UpstreamError",
    "ToolExecutionError",
    "InvalidHistoryStateError",
    "RateLimitedError",
    # Response builders
    "GENERIC_ERROR_MESSAGE",
    "public_message",
    "error_response",
    "success_response",
    "format_error_for_llm",
    # FastAPI integration
    "register_exception_handlers",
    "error_json",
    "log_error",
]
