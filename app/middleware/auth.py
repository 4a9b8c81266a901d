"""
Authentication gate for the calendar sync endpoint.

Two ways in:
- internal callers (cron jobs, other functions) send the shared secret in
  the x-internal-call-secret header
- everyone else sends a Supabase-issued JWT as a bearer token, verified
  with PyJWT against SUPABASE_JWT_SECRET
"""
import hmac
import logging
from typing import Optional

import jwt  # PyJWT
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app import config

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class AuthenticationFailed(Exception):
    """Raised by the gate; rendered as a 401 {error, code, details} body."""

    def __init__(self, code: str, details: str):
        self.code = code
        self.details = details
        super().__init__(f"{code}: {details}")


class TokenPayload:
    """Decoded JWT token payload."""
    def __init__(self, payload: dict):
        self.sub = payload.get("sub")  # Subject (user ID)
        self.role = payload.get("role", "authenticated")
        self.exp = payload.get("exp")
        self._raw = payload

    def __repr__(self) -> str:
        return f"TokenPayload(sub={self.sub}, role={self.role})"


class CallerIdentity:
    """Who passed the gate: an internal caller or an authenticated user."""
    def __init__(self, is_internal: bool, user_id: Optional[str] = None):
        self.is_internal = is_internal
        self.user_id = user_id

    def __repr__(self) -> str:
        return f"CallerIdentity(is_internal={self.is_internal}, user_id={self.user_id})"


def _is_internal_call(secret_header: Optional[str]) -> bool:
    expected = config.INTERNAL_FUNCTIONS_SECRET
    if not secret_header or not expected:
        return False
    return hmac.compare_digest(secret_header, expected)


def decode_token(token: str) -> TokenPayload:
    """
    Verify a Supabase JWT.

    Raises:
        AuthenticationFailed: For invalid or expired tokens
    """
    try:
        payload = jwt.decode(
            token,
            config.SUPABASE_JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"verify_aud": False}
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        raise AuthenticationFailed("INVALID_JWT", "Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise AuthenticationFailed("INVALID_JWT", "Invalid or expired JWT token")

    return TokenPayload(payload)


async def authorize_request(
    x_internal_call_secret: Optional[str] = Header(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CallerIdentity:
    """
    Dependency guarding the sync endpoint.

    Usage:
        @router.post("/nylas-sync")
        async def nylas_sync(caller: CallerIdentity = Depends(authorize_request)):
            ...

    Raises:
        AuthenticationFailed: AUTH_HEADER_MISSING or INVALID_JWT
    """
    if _is_internal_call(x_internal_call_secret):
        logger.info("[auth] Internal call authorized.")
        return CallerIdentity(is_internal=True)

    if not credentials:
        logger.error("[auth] No authorization header")
        raise AuthenticationFailed("AUTH_HEADER_MISSING", "No authorization header provided")

    payload = decode_token(credentials.credentials)
    if not payload.sub:
        raise AuthenticationFailed("INVALID_JWT", "Token has no subject")

    logger.info(f"[auth] Authenticated user: {payload.sub}")
    return CallerIdentity(is_internal=False, user_id=payload.sub)
