"""
Rate Limiting Middleware - in-process fixed-window request throttling.

Two buckets per client IP:
- ANONYMOUS: /api/anonymous/* (strict, unauthenticated traffic)
- GENERAL:   every other /api route

Counters live in process memory; a window opens on the first request from an
IP and resets once it has elapsed. Limits and the window length come from
runtime_config (rate_limit_anonymous, rate_limit_general, rate_limit_window).

Usage:
    app.add_middleware(RateLimitMiddleware)
"""

import logging
import math
import time
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from config import runtime_config
from errors import RateLimitedError, error_json

logger = logging.getLogger(__name__)

ANONYMOUS_PREFIX = "/api/anonymous"
API_PREFIX = "/api"

# Prune expired windows once the table grows past this
_PRUNE_THRESHOLD = 10000


class RateLimitType(Enum):
    """Rate limit buckets with their key prefixes."""
    ANONYMOUS = "parley:rl:anon"
    GENERAL = "parley:rl:api"


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check X-Forwarded-For header (set by nginx/load balancer)
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Take first IP in chain (original client)
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


class FixedWindowLimiter:
    """Counts requests per key inside fixed windows."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # key -> (window_start, count)
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str, limit: int, window_seconds: float) -> Tuple[bool, int, int]:
        """
        Record one request.

        Returns:
            Tuple of (allowed, current_count, reset_in_seconds)
        """
        now = self._clock()
        start, count = self._windows.get(key, (now, 0))
        if now - start >= window_seconds:
            start, count = now, 0
        count += 1
        self._windows[key] = (start, count)

        if len(self._windows) > _PRUNE_THRESHOLD:
            self._prune(now, window_seconds)

        reset_in = max(1, math.ceil(start + window_seconds - now))
        return (count <= limit, count, reset_in)

    def _prune(self, now: float, window_seconds: float) -> None:
        stale = [k for k, (start, _) in self._windows.items() if now - start >= window_seconds]
        for key in stale:
            del self._windows[key]

    def reset(self) -> None:
        self._windows.clear()


def classify_path(path: str) -> Optional[RateLimitType]:
    """Bucket for a request path, or None when the path is not throttled."""
    if path.startswith(ANONYMOUS_PREFIX):
        return RateLimitType.ANONYMOUS
    if path.startswith(API_PREFIX):
        return RateLimitType.GENERAL
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware for REST and SSE endpoints.

    Rejections use the standard error envelope (RATE_LIMITED, retryAfter).
    """

    def __init__(self, app, limiter: Optional[FixedWindowLimiter] = None, config=None):
        super().__init__(app)
        self.limiter = limiter or FixedWindowLimiter()
        self.config = config or runtime_config

    def _limit_for(self, limit_type: RateLimitType) -> int:
        if limit_type == RateLimitType.ANONYMOUS:
            return self.config.rate_limit_anonymous
        return self.config.rate_limit_general

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process request with rate limiting."""
        limit_type = classify_path(request.url.path)
        if limit_type is None:
            return await call_next(request)

        client_ip = _get_client_ip(request)
        limit = self._limit_for(limit_type)
        allowed, count, reset_in = self.limiter.hit(
            f"{limit_type.value}:{client_ip}", limit, self.config.rate_limit_window
        )

        if not allowed:
            logger.warning(
                f"Rate limit exceeded: {limit_type.name} for {client_ip} "
                f"({count}/{limit} in {self.config.rate_limit_window}s)"
            )
            response = error_json(RateLimitedError("Too many requests, please try again later.", retry_after=reset_in))
            response.headers["X-RateLimit-Limit"] = str(limit)
            response.headers["X-RateLimit-Remaining"] = "0"
            return response

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response
