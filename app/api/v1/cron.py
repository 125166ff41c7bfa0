"""
Cron API Endpoints
==================

Scheduled sweeps, called by an external scheduler with
``Authorization: Bearer <CRON_SECRET>``. GET and POST are equivalent.
"""

import logging

from fastapi import APIRouter

from app.dependencies import CronAuth, SubscriptionStoreDep
from app.schemas.subscription import ExpiredTrialsResult, LifecycleResult
from app.services.cache import CacheInvalidator
from app.services.scheduled_jobs import ScheduledJobService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[CronAuth])


@router.api_route(
    "/check-expired-trials",
    methods=["GET", "POST"],
    response_model=ExpiredTrialsResult,
)
async def check_expired_trials(store: SubscriptionStoreDep):
    """Deactivate active trials whose period has ended."""
    result = await ScheduledJobService(store).check_expired_trials()
    await store.commit()

    for expired in result.expired_users:
        await CacheInvalidator.on_subscription_change(str(expired.user_id))

    return result


@router.api_route(
    "/subscription-lifecycle",
    methods=["GET", "POST"],
    response_model=LifecycleResult,
)
async def subscription_lifecycle(store: SubscriptionStoreDep):
    """Classify active subscriptions and deactivate expired ones."""
    result = await ScheduledJobService(store).check_subscription_lifecycle()
    await store.commit()

    for event in result.events:
        if event.actions_taken:
            await CacheInvalidator.on_subscription_change(str(event.user_id))

    return result
