"""
Custom exception hierarchy for Parley.

All exceptions inherit from ParleyError and include:
- code: ErrorCode for categorization (and HTTP status via HTTP_STATUS)
- message: Human-readable error message
- details: Optional additional context
- chat_id: Chat the failure refers to, when one already exists
- context: Additional key-value pairs for debugging
"""

from typing import Any, List, Optional
from .codes import ErrorCode, HTTP_STATUS


class ParleyError(Exception):
    """Base exception for all Parley errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        chat_id: Existing chat id the client can retry against
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    # False for internal-only errors: clients get the generic message
    expose_message: bool = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        chat_id: Optional[str] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.chat_id = chat_id
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code

        super().__init__(message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 500)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "chatId": self.chat_id,
            "context": self.context,
        }


class BadRequestError(ParleyError):
    """Invalid input: empty content, bad pagination param, malformed body."""

    code = ErrorCode.BAD_REQUEST

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if received is not None:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class UnauthorizedError(ParleyError):
    """Missing, invalid or expired credential."""

    code = ErrorCode.UNAUTHORIZED


class NotFoundError(ParleyError):
    """Chat absent, not owned by the caller, or expired."""

    code = ErrorCode.NOT_FOUND

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, **ctx)


class InvalidModelError(ParleyError):
    """Requested model is not on the deployment allow-list."""

    code = ErrorCode.INVALID_MODEL

    def __init__(self, model: str, available: List[str], **context: Any):
        self.model = model
        self.available = list(available)
        message = f"Model {model} is not available. Available models: {', '.join(self.available)}"
        super().__init__(message, model=model, **context)


class UpstreamError(ParleyError):
    """LLM unavailable after the retry budget, or failed with a fatal error."""

    code = ErrorCode.LLM_UNAVAILABLE
    error_type = "LLM_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        attempts: Optional[int] = None,
        retry_after: Optional[int] = None,
        **context: Any,
    ):
        self.retry_after = retry_after
        ctx = {**context}
        if model:
            ctx["model"] = model
        if attempts is not None:
            ctx["attempts"] = attempts
        super().__init__(message, details, **ctx)

    def for_chat(self, chat_id: Optional[str], message: Optional[str] = None,
                 retry_after: Optional[int] = None) -> "UpstreamError":
        """Bind the failure to an already-persisted chat so the client can retry."""
        self.chat_id = chat_id
        self.retry_after = retry_after
        if message:
            self.message = message
        return self


class ToolExecutionError(ParleyError):
    """Tool loop gave up. Internal only: callers fall back to a plain completion."""

    code = ErrorCode.TOOL_EXECUTION_FAILED
    expose_message = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        tool: Optional[str] = None,
        attempts: Optional[int] = None,
        **context: Any,
    ):
        ctx = {**context}
        if tool:
            ctx["tool"] = tool
        if attempts is not None:
            ctx["attempts"] = attempts
        super().__init__(message, details, **ctx)


class InvalidHistoryStateError(ParleyError):
    """History handed to the LLM does not end with a user-authored message."""

    code = ErrorCode.INVALID_HISTORY_STATE
    expose_message = False


class RateLimitedError(ParleyError):
    """Too many requests from one client within the window."""

    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, retry_after: int, **context: Any):
        self.retry_after = retry_after
        super().__init__(message, **context)
