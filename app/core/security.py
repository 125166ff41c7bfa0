"""
Security Module
===============

Authentication utilities including:
- JWT session token validation (tokens are issued by the auth provider)
- Shared-secret extraction and comparison for webhooks and cron callers
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Session issuance lives with the auth provider; this exists so that
    tooling and tests can mint tokens the API accepts.

    Args:
        data: Payload data to encode
        expires_delta: Custom expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))

    to_encode.update({
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    The audience is not checked; provider-issued session tokens carry
    their own ``aud`` value.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        return payload
    except JWTError:
        return None


def looks_like_jwt(token: str) -> bool:
    """A compact JWS has exactly three dot-separated segments."""
    return "." in token and len(token.split(".")) == 3


def secrets_match(candidate: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a presented secret with the configured one."""
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def extract_webhook_token(
    *,
    query_secret: Optional[str],
    signature_header: Optional[str],
    authorization: Optional[str],
    allow_legacy: bool = True,
) -> Optional[str]:
    """
    Pick the webhook secret out of the request.

    Priority order:
    1. ``?secret=`` query parameter
    2. ``X-Provider-Signature`` header
    3. ``Authorization`` header: a bearer token that is not JWT-shaped, or
       the raw header value when it carries no scheme

    The first two locations exist because some hosts validate
    ``Authorization`` as a session JWT before the handler runs. They are
    skipped when ``allow_legacy`` is False.
    """
    if allow_legacy:
        if query_secret:
            return query_secret.strip()
        if signature_header:
            return signature_header.strip()

    if not authorization:
        return None

    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if looks_like_jwt(token):
            return None
        return token

    return authorization.strip()
