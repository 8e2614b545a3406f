"""
Caller identity for the HTTP surface.

Validates HS256 session JWTs and extracts user_id from the `sub` claim.
Falls back to the X-User-Id header when no JWT secret is configured
(local development and tests). The mail pipeline authenticates with a
shared X-Ingest-Key instead of a user identity.
"""
import hmac
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from letterbox.core.config import settings
from letterbox.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def verify_session_jwt(token: str) -> Optional[str]:
    """
    Verify a session JWT and extract user_id.

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        UnauthorizedError: Invalid or expired token
    """
    if not settings.CLERK_SECRET_KEY:
        logger.debug("No CLERK_SECRET_KEY configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.CLERK_SECRET_KEY,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development user ID"),
) -> str:
    """
    Resolve the calling user.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when JWT verification is not configured)
    3. Raise UNAUTHORIZED
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_session_jwt(auth_header[7:])
        if user_id:
            return user_id

    if x_user_id and not settings.CLERK_SECRET_KEY:
        return x_user_id

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")


async def require_ingest_key(
    x_ingest_key: Optional[str] = Header(None, description="Mail pipeline shared secret"),
) -> None:
    """Reject ingestion calls that do not carry the configured shared secret."""
    expected = settings.INGEST_API_KEY
    if not expected or not x_ingest_key or not hmac.compare_digest(x_ingest_key, expected):
        raise UnauthorizedError("Invalid ingest key")
