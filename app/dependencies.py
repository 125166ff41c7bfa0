"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

from dataclasses import dataclass
import logging
from typing import Annotated, Optional
import uuid

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.core.security import decode_token, secrets_match
from app.db.session import get_db
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Security scheme for bearer authentication (JWT or cron secret)
security = HTTPBearer(auto_error=False)

Credentials = Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)]


async def get_subscription_store(db: DBSession) -> SubscriptionStore:
    """Record store bound to the request's database session."""
    return SubscriptionStore(db)


SubscriptionStoreDep = Annotated[SubscriptionStore, Depends(get_subscription_store)]


# =============================================================================
# Caller resolution
# =============================================================================

@dataclass(frozen=True)
class SyncCaller:
    """Who is asking for a sync: the cron runner, or one signed-in user."""

    is_cron: bool
    user_id: Optional[uuid.UUID] = None


def _is_cron_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> bool:
    if credentials is None:
        return False
    return secrets_match(credentials.credentials, settings.CRON_SECRET)


def _user_id_from_credentials(
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Optional[uuid.UUID]:
    """Decode a session JWT and return its subject as a user id."""
    if credentials is None:
        return None

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type", "access") != "access":
        return None

    user_id_str = payload.get("sub")
    if user_id_str is None:
        return None

    try:
        return uuid.UUID(user_id_str)
    except ValueError:
        return None


async def verify_cron_secret(credentials: Credentials) -> None:
    """
    Require ``Authorization: Bearer <CRON_SECRET>``.

    Raises 401 otherwise, including when no cron secret is configured.
    """
    if not _is_cron_credentials(credentials):
        logger.warning("Unauthorized cron call")
        raise AuthenticationError(message="Invalid cron secret")


async def get_current_user_id(credentials: Credentials) -> uuid.UUID:
    """
    Get the authenticated user's id from the session JWT.

    Raises 401 if not authenticated or token is invalid.
    """
    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Not authenticated",
        )

    user_id = _user_id_from_credentials(credentials)
    if user_id is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
        )

    return user_id


async def get_sync_caller(credentials: Credentials) -> SyncCaller:
    """Accept either the cron secret or a user session token."""
    if _is_cron_credentials(credentials):
        return SyncCaller(is_cron=True)

    user_id = _user_id_from_credentials(credentials)
    if user_id is None:
        raise AuthenticationError(message="Unauthorized")

    return SyncCaller(is_cron=False, user_id=user_id)


# Type aliases for dependencies
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
CronAuth = Depends(verify_cron_secret)
SyncCallerDep = Annotated[SyncCaller, Depends(get_sync_caller)]
