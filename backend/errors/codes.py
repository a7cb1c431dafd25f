"""
Error codes for Parley.

Provides the taxonomy of error codes surfaced in the `error` field of the
REST error envelope. Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Parley.

    Client errors map to 4xx responses, upstream and internal failures to 5xx.
    TOOL_EXECUTION_FAILED and INVALID_HISTORY_STATE are internal and never
    reach a caller with their own code.
    """

    # Client errors
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_MODEL = "INVALID_MODEL"
    RATE_LIMITED = "RATE_LIMITED"

    # Upstream LLM errors
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"

    # Internal errors
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    INVALID_HISTORY_STATE = "INVALID_HISTORY_STATE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# HTTP status for each code
HTTP_STATUS = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_MODEL: 400,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.LLM_UNAVAILABLE: 503,
    ErrorCode.TOOL_EXECUTION_FAILED: 500,
    ErrorCode.INVALID_HISTORY_STATE: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}
