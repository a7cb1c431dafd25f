"""
Bearer token gate for Parley.

Resolves the caller identity for durable chat routes from an HS256 JWT
signed with JWT_SECRET. Token issuance belongs to the upstream identity
service; create_access_token() only exists for tests and operator tooling.

Claims:
- userId (or sub): caller id
- oauthToken (optional): delegated credential forwarded to the MCP server

The delegated credential may also arrive in the X-OAuth-Token header, which
wins over the claim.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import runtime_config
from errors import UnauthorizedError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_HOURS = 24

# Optional Bearer token extractor (doesn't auto-raise on missing)
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    """Authenticated identity for one request."""

    user_id: str
    oauth_token: Optional[str] = None


def verify_token(token: str, config=None) -> Optional[dict]:
    """Decode a JWT. Returns the payload, or None if invalid or expired."""
    config = config or runtime_config
    if not config.jwt_secret:
        logger.warning("JWT_SECRET is not configured; rejecting bearer token")
        return None
    try:
        return jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected invalid token: {e}")
        return None


def create_access_token(
    user_id: str,
    oauth_token: Optional[str] = None,
    expires_in: float = TOKEN_EXPIRY_HOURS * 3600,
    config=None,
) -> str:
    """Sign a caller token."""
    config = config or runtime_config
    if not config.jwt_secret:
        raise ValueError("No JWT secret configured")

    now = time.time()
    payload = {"userId": user_id, "sub": user_id, "iat": int(now), "exp": int(now + expires_in)}
    if oauth_token:
        payload["oauthToken"] = oauth_token
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def caller_from_token(token: str, header_oauth_token: Optional[str] = None, config=None) -> Optional[Caller]:
    payload = verify_token(token, config)
    if not payload:
        return None
    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        return None
    return Caller(user_id=str(user_id), oauth_token=header_oauth_token or payload.get("oauthToken"))


# =============================================================================
# FastAPI Dependencies
# =============================================================================


async def require_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    x_oauth_token: Optional[str] = Header(None),
) -> Caller:
    """
    Auth dependency for durable chat routes.

    Raises:
        UnauthorizedError: missing, invalid or expired token
    """
    if credentials and credentials.credentials:
        caller = caller_from_token(credentials.credentials, x_oauth_token)
        if caller:
            return caller
        raise UnauthorizedError("Invalid or expired token")

    raise UnauthorizedError("Authentication required")


async def optional_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    x_oauth_token: Optional[str] = Header(None),
) -> Optional[Caller]:
    """Like require_caller, but anonymous requests get None instead of a 401."""
    if credentials and credentials.credentials:
        return caller_from_token(credentials.credentials, x_oauth_token)
    return None
