"""
Parley Middleware - Request processing middleware.

- rate_limit: Per-IP fixed-window limits for anonymous and general API routes
"""

from .rate_limit import RateLimitMiddleware, FixedWindowLimiter, RateLimitType

__all__ = ["RateLimitMiddleware", "FixedWindowLimiter", "RateLimitType"]
