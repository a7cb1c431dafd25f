"""
Error handling utilities for Parley.

Registers FastAPI exception handlers that turn the exception hierarchy into
the standard error envelope, plus a consistent error logger.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .codes import ErrorCode
from .exceptions import ParleyError, RateLimitedError
from .response import error_response

logger = logging.getLogger(__name__)


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Args:
        logger: Logger instance to use
        error: The exception to log
        context: Optional context string to prefix the message
        include_traceback: Whether to include the full stack trace

    Example:
        >>> log_error(logger, err, context="sendMessage")
        # Logs: "[sendMessage] LLM_UNAVAILABLE: The AI service is temporarily unavailable"
    """
    if isinstance(error, ParleyError):
        message = f"{error.code.value}: {error}"
    else:
        message = f"{error.__class__.__name__}: {error}"

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)


def error_json(error: ParleyError | Exception, chat_id: Optional[str] = None) -> JSONResponse:
    """Render an exception as a JSONResponse with the matching status code."""
    status = error.status_code if isinstance(error, ParleyError) else 500
    headers = None
    if isinstance(error, RateLimitedError):
        headers = {"Retry-After": str(error.retry_after)}
    return JSONResponse(status_code=status, content=error_response(error, chat_id), headers=headers)


async def _parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    if exc.status_code >= 500:
        log_error(logger, exc, context=f"{request.method} {request.url.path}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code.value}: {exc.message}")
    return error_json(exc)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": ErrorCode.BAD_REQUEST.value, "message": message},
    )


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        code, message = ErrorCode.NOT_FOUND, f"Route {request.url.path} not found"
    elif exc.status_code == 401:
        code, message = ErrorCode.UNAUTHORIZED, str(exc.detail)
    elif exc.status_code < 500:
        code, message = ErrorCode.BAD_REQUEST, str(exc.detail)
    else:
        code, message = ErrorCode.INTERNAL_ERROR, "An unexpected error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": code.value, "message": message},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, exc, context=f"{request.method} {request.url.path}")
    return error_json(exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing handlers on an app."""
    app.add_exception_handler(ParleyError, _parley_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
