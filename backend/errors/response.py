"""
Standard response envelopes for Parley.

Every REST endpoint answers with one of two shapes:
    {"success": true, "data": ...}
    {"success": false, "error": CODE, "message": ..., "errorType"?, "retryAfter"?, "chatId"?}
"""

from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import ParleyError

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"


def public_message(error: ParleyError | Exception) -> str:
    """Message safe to show a client: internal-only errors read as generic."""
    if isinstance(error, ParleyError) and error.expose_message:
        return error.message
    return GENERIC_ERROR_MESSAGE


def error_response(error: ParleyError | Exception, chat_id: Optional[str] = None) -> dict:
    """Build the standard error envelope.

    Non-Parley exceptions are reported as INTERNAL_ERROR with a generic
    message; their detail belongs in the server log only. Internal-only
    Parley errors (history state, tool loop) keep their code but not
    their message.

    Args:
        error: The exception to convert to a response
        chat_id: Chat id to report when the error does not carry one

    Returns:
        Envelope dict with success=False

    Example:
        >>> from errors import UpstreamError, error_response
        >>> err = UpstreamError("The AI service is temporarily unavailable.")
        >>> error_response(err.for_chat("c1", retry_after=60))
        {
            "success": False,
            "error": "LLM_UNAVAILABLE",
            "message": "The AI service is temporarily unavailable.",
            "errorType": "LLM_UNAVAILABLE",
            "retryAfter": 60,
            "chatId": "c1"
        }
    """
    if not isinstance(error, ParleyError):
        body = {
            "success": False,
            "error": ErrorCode.INTERNAL_ERROR.value,
            "message": GENERIC_ERROR_MESSAGE,
        }
        if chat_id:
            body["chatId"] = chat_id
        return body

    body = {
        "success": False,
        "error": error.code.value,
        "message": public_message(error),
    }

    error_type = getattr(error, "error_type", None)
    if error_type:
        body["errorType"] = error_type

    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        body["retryAfter"] = retry_after

    chat = error.chat_id or chat_id
    if chat:
        body["chatId"] = chat

    return body


def success_response(data: Any = None) -> dict:
    """Build the standard success envelope.

    Example:
        >>> success_response({"id": "c1"})
        {"success": True, "data": {"id": "c1"}}
    """
    return {"success": True, "data": data}


def format_error_for_llm(error: ParleyError | Exception) -> str:
    """Render an error as plain text for inclusion in an LLM prompt."""
    if isinstance(error, ParleyError):
        if error.details:
            return f"{error.message} ({error.details})"
        return error.message

    text = str(error).strip()
    return text or error.__class__.__name__
