"""
RevenueCat Service
==================

Integration with RevenueCat for subscription state reconciliation.

Handles:
- Webhook event processing (identity resolution, classification, write)
- Subscriber info fetching via REST API
- Subscription sync (force-refresh from RevenueCat), single user or bulk
"""

import logging
import math
from datetime import datetime
from typing import Any, Optional
import uuid

import httpx

from app.config import settings
from app.core.errors import IdentityConflictError, StoreError
from app.models.subscription import SubscriptionEnvironment
from app.schemas.subscription import (
    RevenueCatWebhookEvent,
    SyncAllResult,
    SyncResult,
)
from app.services.identity_resolver import Deferred, Resolved, resolve_identity
from app.services.subscription_events import (
    DEFAULT_ENTITLEMENT,
    UNKNOWN_PRODUCT,
    SubscriptionSnapshot,
    build_snapshot,
    normalize_store,
)
from app.services.subscription_store import SubscriptionStore
from app.services.subscription_writer import SubscriptionWriter, WriteOutcome
from app.utils.helpers import parse_date, utc_now

logger = logging.getLogger(__name__)

# Entitlement windows this short are treated as trials during sync
SYNC_TRIAL_MAX_DAYS = 7


def extract_snapshot_from_subscriber(
    subscriber: dict[str, Any],
    user_id: uuid.UUID,
    rc_app_user_id: str,
    now: Optional[datetime] = None,
) -> Optional[SubscriptionSnapshot]:
    """
    Build a snapshot from a RevenueCat ``subscriber`` object.

    Uses the ``pro`` entitlement, or the first one present. Returns None when
    the subscriber has no entitlement with a matching subscription.
    """
    now = now or utc_now()
    entitlements: dict[str, Any] = subscriber.get("entitlements") or {}
    subscriptions: dict[str, Any] = subscriber.get("subscriptions") or {}

    if DEFAULT_ENTITLEMENT in entitlements:
        entitlement_name = DEFAULT_ENTITLEMENT
    elif entitlements:
        entitlement_name = next(iter(entitlements))
    else:
        return None

    entitlement = entitlements[entitlement_name] or {}
    product_id = entitlement.get("product_identifier")
    subscription = subscriptions.get(product_id) if product_id else None
    if subscription is None:
        logger.warning(
            "Entitlement %s found for %s but no matching subscription %s",
            entitlement_name,
            rc_app_user_id,
            product_id,
        )
        return None

    expires_at = parse_date(entitlement.get("expires_date"))
    purchased_at = parse_date(subscription.get("purchase_date"))
    is_active = expires_at is not None and expires_at > now

    is_trial = "trial" in (entitlement.get("period_type"), subscription.get("period_type"))
    if not is_trial and expires_at is not None and purchased_at is not None:
        days = math.ceil((expires_at - purchased_at).total_seconds() / 86400)
        is_trial = days <= SYNC_TRIAL_MAX_DAYS

    if entitlement.get("is_sandbox") or subscription.get("is_sandbox"):
        environment = SubscriptionEnvironment.SANDBOX
    else:
        environment = SubscriptionEnvironment.PRODUCTION

    original_purchase_at = (
        parse_date(subscription.get("original_purchase_date")) or purchased_at
    )

    return SubscriptionSnapshot(
        user_id=user_id,
        rc_app_user_id=rc_app_user_id,
        rc_original_app_user_id=subscriber.get("original_app_user_id") or rc_app_user_id,
        entitlement=entitlement_name,
        product_id=product_id or UNKNOWN_PRODUCT,
        store=normalize_store(subscription.get("store")),
        environment=environment,
        is_active=is_active,
        is_trial=is_trial,
        will_renew=subscription.get("unsubscribe_detected_at") is None,
        current_period_end=expires_at,
        original_purchase_at=original_purchase_at,
        rc_snapshot=subscriber,
    )


class RevenueCatService:
    """Service for RevenueCat operations."""

    BASE_URL = "https://api.revenuecat.com/v1"

    def __init__(self, store: SubscriptionStore):
        self.store = store
        self.writer = SubscriptionWriter(store)
        self.api_key = settings.REVENUECAT_API_KEY

    # -------------------------------------------------------------------------
    # RevenueCat REST API
    # -------------------------------------------------------------------------

    def _get_headers(self) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def get_subscriber(self, rc_app_user_id: str) -> Optional[dict]:
        """
        Fetch subscriber information from RevenueCat.

        Args:
            rc_app_user_id: RevenueCat app user ID.

        Returns:
            The ``subscriber`` object from RevenueCat, or None on failure.
        """
        if not self.api_key:
            logger.warning("RevenueCat API key not configured, skipping subscriber fetch")
            return None

        async with httpx.AsyncClient(base_url=self.BASE_URL) as client:
            try:
                response = await client.get(
                    f"/subscribers/{rc_app_user_id}",
                    headers=self._get_headers(),
                    timeout=settings.REVENUECAT_TIMEOUT_SECONDS,
                )
            except httpx.TimeoutException:
                logger.error("RevenueCat API timeout for subscriber %s", rc_app_user_id)
                return None
            except httpx.HTTPError as e:
                logger.error("RevenueCat API error for subscriber %s: %s", rc_app_user_id, e)
                return None

        if response.status_code != 200:
            logger.error(
                "RevenueCat API returned status %d for subscriber %s: %s",
                response.status_code,
                rc_app_user_id,
                response.text[:200],
            )
            return None

        return response.json().get("subscriber")

    # -------------------------------------------------------------------------
    # Webhook Processing
    # -------------------------------------------------------------------------

    async def process_webhook_event(self, event: RevenueCatWebhookEvent) -> WriteOutcome:
        """
        Apply one webhook event to the store.

        The caller owns the transaction. Deferred identities and unknown
        users come back as a skipped outcome rather than an error.

        Raises:
            IdentityConflictError: the RevenueCat id belongs to another user
            StoreError: store failure
        """
        identity = await resolve_identity(
            self.store, event.app_user_id, event.original_app_user_id
        )

        if isinstance(identity, Deferred):
            logger.info(
                "Deferring event %s for %s: %s",
                event.id,
                event.app_user_id,
                identity.reason,
            )
            return WriteOutcome.skipped(identity.reason)

        previous = identity.record if isinstance(identity, Resolved) else None
        logger.info(
            "Resolved %s to user %s (%s, record=%s)",
            event.app_user_id,
            identity.user_id,
            type(identity).__name__,
            previous.id if previous is not None else None,
        )

        if event.event_type is None:
            logger.info(
                "Unrecognized event type %s for %s, keeping active/renew state",
                event.type,
                event.app_user_id,
            )

        snapshot = build_snapshot(
            event,
            identity.user_id,
            previous,
            default_trial_days=settings.DEFAULT_TRIAL_DAYS,
        )
        logger.info(
            "Classified %s: active=%s trial=%s will_renew=%s period_end=%s",
            event.type,
            snapshot.is_active,
            snapshot.is_trial,
            snapshot.will_renew,
            snapshot.current_period_end,
        )

        return await self.writer.write(identity, snapshot, event.event_type)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync_user_subscription(
        self,
        user_id: Optional[uuid.UUID] = None,
        rc_app_user_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Re-read one subscriber from RevenueCat and write its current state.

        Either identifier may be omitted; the other is looked up in the store.
        """
        if not rc_app_user_id and user_id is not None:
            record = await self.store.find_latest_for_user(user_id)
            if record is None:
                return SyncResult(
                    success=False,
                    user_id=user_id,
                    error="No subscription record found for user",
                )
            rc_app_user_id = record.rc_app_user_id

        if not rc_app_user_id:
            return SyncResult(success=False, error="rc_app_user_id is required")

        subscriber = await self.get_subscriber(rc_app_user_id)
        if subscriber is None:
            return SyncResult(
                success=False,
                user_id=user_id,
                error="Failed to fetch from RevenueCat API",
            )

        existing = await self.store.find_by_rc_app_user_id(rc_app_user_id)
        if user_id is None:
            if existing is None:
                return SyncResult(success=False, error="User not found in database")
            user_id = existing.user_id

        snapshot = extract_snapshot_from_subscriber(subscriber, user_id, rc_app_user_id)
        if snapshot is None:
            count = await self.writer.deactivate_user(user_id)
            logger.info(
                "No entitlement for %s, deactivated %d record(s) of user %s",
                rc_app_user_id,
                count,
                user_id,
            )
            return SyncResult(success=True, synced=True, user_id=user_id)

        if existing is not None and existing.user_id != user_id:
            existing = None
        identity = Resolved(user_id=user_id, record=existing)

        try:
            async with self.store.savepoint():
                outcome = await self.writer.write(identity, snapshot)
        except IdentityConflictError as e:
            return SyncResult(success=False, user_id=user_id, error=str(e))

        if not outcome.written:
            return SyncResult(success=False, user_id=user_id, error=outcome.skipped_reason)

        logger.info(
            "Synced %s for user %s: active=%s trial=%s",
            rc_app_user_id,
            user_id,
            snapshot.is_active,
            snapshot.is_trial,
        )
        return SyncResult(success=True, synced=True, user_id=user_id)

    async def sync_all(self, limit: Optional[int] = None) -> SyncAllResult:
        """Re-sync every active record, up to ``limit``."""
        limit = limit or settings.SYNC_ALL_LIMIT
        records = await self.store.list_active(limit=limit)

        # Read identifiers up front; records may be refreshed while syncing
        targets = [(record.user_id, record.rc_app_user_id) for record in records]

        results: list[SyncResult] = []
        for user_id, rc_app_user_id in targets:
            try:
                async with self.store.savepoint():
                    result = await self.sync_user_subscription(user_id, rc_app_user_id)
            except StoreError as e:
                logger.error("Sync failed for user %s: %s", user_id, e)
                result = SyncResult(success=False, user_id=user_id, error=str(e))
            results.append(result)

        synced_count = sum(1 for result in results if result.success)
        logger.info("Bulk sync finished: %d/%d synced", synced_count, len(results))

        return SyncAllResult(
            success=True,
            synced_count=synced_count,
            total=len(results),
            results=results,
        )
