"""
Caller identity for ledger routes.

Validates hosted-auth JWTs (HS256, shared secret) and extracts user_id from
the `sub` claim. The X-User-Id header is honoured only when
ALLOW_HEADER_AUTH is enabled (tests and local development).
"""
import hmac
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from resumeledger.core.config import settings
from resumeledger.core.errors import PermissionError

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> str:
    """
    Verify a hosted-auth JWT and extract user_id.

    Raises:
        HTTPException 401: Invalid, expired, or unverifiable token
    """
    if not settings.SUPABASE_JWT_SECRET:
        raise HTTPException(status_code=401, detail="Token verification is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    Extract the current user ID.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-User-Id header, when ALLOW_HEADER_AUTH is on
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        request.state.user_id = user_id
        return user_id

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(status_code=401, detail="Missing Authorization (Bearer JWT)")


def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    """Gate admin routes behind the shared X-Admin-Key secret."""
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or not hmac.compare_digest(x_admin_key, admin_key):
        logger.warning("admin.invalid_key", extra={"event_type": "admin.invalid_key"})
        raise PermissionError("Invalid or missing X-Admin-Key header")
    return x_admin_key
