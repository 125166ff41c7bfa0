"""
Scheduled Jobs
==============

Maintenance sweeps triggered by an external cron caller:
- Expired trial check
- Subscription lifecycle check (expired / expiring soon / cancelled)

Both are bounded, single-shot and idempotent. The caller commits.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from app.models.subscription import UserSubscription
from app.schemas.subscription import (
    ExpiredTrial,
    ExpiredTrialsResult,
    LifecycleEvent,
    LifecycleResult,
    LifecycleStatus,
)
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 3
CANCELLED_NOTICE_DAYS = 7


def days_until(period_end: datetime, now: datetime) -> int:
    """Whole days until ``period_end``, rounded up."""
    return math.ceil((period_end - now).total_seconds() / 86400)


def determine_lifecycle_status(
    period_end: Optional[datetime],
    will_renew: bool,
    now: Optional[datetime] = None,
) -> tuple[LifecycleStatus, Optional[int]]:
    """
    Classify a record by how close its period end is.

    Returns the status and the days until expiration (None when the record
    has no period end, which counts as active).
    """
    if period_end is None:
        return LifecycleStatus.ACTIVE, None

    now = now or utc_now()
    days = days_until(period_end, now)

    if period_end < now:
        return LifecycleStatus.EXPIRED, days
    if days <= EXPIRING_SOON_DAYS:
        return LifecycleStatus.EXPIRING_SOON, days
    if not will_renew and days <= CANCELLED_NOTICE_DAYS:
        return LifecycleStatus.CANCELLED, days
    return LifecycleStatus.ACTIVE, days


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def check_expired_trials(self, now: Optional[datetime] = None) -> ExpiredTrialsResult:
        """
        Turn off every active trial whose period has ended.

        Run daily.
        """
        now = now or utc_now()
        trials = await self.store.list_active(trial_only=True, period_ended_before=now)

        if not trials:
            logger.info("No expired trials found")
            return ExpiredTrialsResult(
                message="No active trials to check",
                expired_count=0,
            )

        expired: list[ExpiredTrial] = []
        for record in trials:
            await self.store.update(record.id, {"is_active": False})
            logger.info("Trial expired for user %s", record.user_id)
            expired.append(
                ExpiredTrial(
                    user_id=record.user_id,
                    rc_app_user_id=record.rc_app_user_id,
                    trial_expired_at=record.current_period_end,
                )
            )

        logger.info("Trial check completed, %d trials expired", len(expired))
        return ExpiredTrialsResult(
            message=f"Processed {len(expired)} expired trials",
            expired_count=len(expired),
            expired_users=expired,
        )

    async def check_subscription_lifecycle(
        self,
        now: Optional[datetime] = None,
    ) -> LifecycleResult:
        """
        Classify every active record; expired ones are switched off.

        Run daily. Records that are simply active produce no event.
        """
        now = now or utc_now()
        records = await self.store.list_active()

        events: list[LifecycleEvent] = []
        for record in records:
            event = await self._handle_record(record, now)
            if event is not None:
                events.append(event)

        logger.info(
            "Processed %d subscriptions, found %d lifecycle events",
            len(records),
            len(events),
        )
        return LifecycleResult(
            message=f"Processed {len(records)} subscriptions",
            processed=len(records),
            events=events,
        )

    async def _handle_record(
        self,
        record: UserSubscription,
        now: datetime,
    ) -> Optional[LifecycleEvent]:
        status, days = determine_lifecycle_status(
            record.current_period_end, record.will_renew, now
        )
        if status == LifecycleStatus.ACTIVE:
            return None

        actions: list[str] = []
        if status == LifecycleStatus.EXPIRED:
            await self.store.update(record.id, {"is_active": False, "will_renew": False})
            actions.append("marked_subscription_inactive")
            logger.warning("Subscription expired for user %s", record.user_id)
        else:
            logger.info("Subscription %s for user %s", status.value, record.user_id)

        return LifecycleEvent(
            user_id=record.user_id,
            subscription_id=record.id,
            event_type=status,
            days_until_expiration=days,
            current_period_end=record.current_period_end,
            timestamp=now,
            actions_taken=actions,
        )
