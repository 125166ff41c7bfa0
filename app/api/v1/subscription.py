"""
Subscription API Endpoints
==========================

Client-driven sync from RevenueCat and subscription status.

Sync is the recovery path for webhooks that could not be linked to a user:
once the user signs in, the app (or the cron runner) asks for a refresh and
the current RevenueCat state is written through the same conflict-safe
writer the webhook uses.
"""

import logging
from typing import Optional, Union
import uuid

from fastapi import APIRouter, Query

from app.core.errors import (
    ErrorCodes,
    ForbiddenError,
    NotFoundError,
    ProcessingError,
    ValidationError,
)
from app.dependencies import CurrentUserId, SubscriptionStoreDep, SyncCaller, SyncCallerDep
from app.schemas.subscription import (
    SubscriptionStatusData,
    SubscriptionStatusResponse,
    SyncAllResult,
    SyncRequest,
    SyncResult,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.revenuecat import RevenueCatService
from app.services.scheduled_jobs import determine_lifecycle_status
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorize_sync(
    caller: SyncCaller,
    user_id: Optional[uuid.UUID],
    rc_app_user_id: Optional[str],
    sync_all: bool = False,
) -> Optional[uuid.UUID]:
    """
    Check what the caller may sync and return the effective user id.

    Signed-in users may only sync themselves and never in bulk.
    """
    if caller.is_cron:
        if not sync_all and user_id is None and not rc_app_user_id:
            raise ValidationError("Either user_id or rc_app_user_id is required")
        return user_id

    if sync_all:
        raise ForbiddenError(message="sync_all requires the cron secret")
    if user_id is not None and user_id != caller.user_id:
        raise ForbiddenError(message="Users may only sync their own subscription")

    return caller.user_id


async def _sync_one(
    store: SubscriptionStore,
    user_id: Optional[uuid.UUID],
    rc_app_user_id: Optional[str],
) -> SyncResult:
    result = await RevenueCatService(store).sync_user_subscription(user_id, rc_app_user_id)

    if not result.success:
        await store.rollback()
        logger.warning(
            "Sync failed for user=%s rc_app_user_id=%s: %s",
            user_id,
            rc_app_user_id,
            result.error,
        )
        raise ProcessingError(
            code=ErrorCodes.SUB_SYNC_FAILED,
            message=result.error or "Sync failed",
        )

    await store.commit()

    if result.user_id is not None:
        await CacheInvalidator.on_subscription_change(str(result.user_id))

    return result


async def _sync_all(store: SubscriptionStore) -> SyncAllResult:
    result = await RevenueCatService(store).sync_all()
    await store.commit()

    for item in result.results:
        if item.synced and item.user_id is not None:
            await CacheInvalidator.on_subscription_change(str(item.user_id))

    return result


@router.get(
    "/sync",
    response_model=SyncResult,
    response_model_exclude_none=True,
)
async def sync_subscription_query(
    caller: SyncCallerDep,
    store: SubscriptionStoreDep,
    user_id: Optional[uuid.UUID] = Query(default=None),
    rc_app_user_id: Optional[str] = Query(default=None),
):
    """
    Force-refresh one user's subscription from RevenueCat.

    The cron runner must pass ``user_id`` or ``rc_app_user_id``; a
    signed-in user's own id is used when neither is given.
    """
    effective_user_id = _authorize_sync(caller, user_id, rc_app_user_id)
    return await _sync_one(store, effective_user_id, rc_app_user_id)


@router.post(
    "/sync",
    response_model=Union[SyncAllResult, SyncResult],
    response_model_exclude_none=True,
)
async def sync_subscription(
    sync_data: SyncRequest,
    caller: SyncCallerDep,
    store: SubscriptionStoreDep,
):
    """
    Force-refresh subscription state from RevenueCat.

    ``sync_all`` re-syncs up to SYNC_ALL_LIMIT active records and is only
    available to the cron runner.
    """
    effective_user_id = _authorize_sync(
        caller,
        sync_data.user_id,
        sync_data.rc_app_user_id,
        sync_data.sync_all,
    )

    if sync_data.sync_all:
        return await _sync_all(store)

    return await _sync_one(store, effective_user_id, sync_data.rc_app_user_id)


@router.get(
    "/status",
    response_model=SubscriptionStatusResponse,
)
async def get_subscription_status(
    user_id: CurrentUserId,
    store: SubscriptionStoreDep,
):
    """Get the signed-in user's current subscription status."""
    user_id_str = str(user_id)

    cached = await CacheManager.get(CacheKeys.subscription_status(user_id_str))
    if cached:
        return SubscriptionStatusResponse(success=True, data=cached)

    record = await store.find_active_for_user(user_id)
    if record is None:
        record = await store.find_latest_for_user(user_id)
    if record is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_NOT_FOUND,
            message="No subscription found",
        )

    status, days = determine_lifecycle_status(record.current_period_end, record.will_renew)
    data = SubscriptionStatusData(
        user_id=record.user_id,
        is_active=record.is_active,
        is_trial=record.is_trial,
        will_renew=record.will_renew,
        entitlement=record.entitlement,
        product_id=record.product_id,
        current_period_end=record.current_period_end,
        days_until_expiration=days,
        status=status,
    )

    await CacheManager.set(
        CacheKeys.subscription_status(user_id_str),
        data.model_dump(mode="json"),
        ttl=CacheManager.TTL_SHORT,
    )

    return SubscriptionStatusResponse(success=True, data=data)
