"""
Subscription Writer
===================

Persists a computed subscription snapshot while keeping two guarantees:

- at most one active record per user
- a RevenueCat app user id is owned by exactly one record

Constraint violations raised by the store are handled here as signals
rather than failures. The caller owns the transaction and commits once.
"""

from dataclasses import dataclass
import logging
from typing import Optional
import uuid

from app.core.errors import (
    ForeignKeyViolation,
    IdentityConflictError,
    StoreError,
    UniqueViolation,
)
from app.schemas.subscription import RevenueCatEventType
from app.services.identity_resolver import (
    CandidateUnauthenticated,
    Deferred,
    IdentityResolution,
    Resolved,
)
from app.services.subscription_events import SubscriptionSnapshot
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

USER_NOT_FOUND_MESSAGE = "User not found yet; will sync on next app launch"

# Retries after losing a race on the one-active-per-user index
MAX_ACTIVE_CONFLICT_RETRIES = 1


@dataclass
class WriteOutcome:
    """Result of one write attempt."""

    written: bool
    user_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None
    skipped_reason: Optional[str] = None

    @classmethod
    def skipped(cls, reason: str, user_id: Optional[uuid.UUID] = None) -> "WriteOutcome":
        return cls(written=False, user_id=user_id, skipped_reason=reason)


class SubscriptionWriter:
    """Conflict-aware persistence of subscription snapshots."""

    def __init__(self, store: SubscriptionStore):
        self.store = store

    async def write(
        self,
        identity: IdentityResolution,
        snapshot: SubscriptionSnapshot,
        event_type: Optional[RevenueCatEventType] = None,
    ) -> WriteOutcome:
        """
        Write ``snapshot`` for the resolved identity.

        Raises:
            IdentityConflictError: the RevenueCat id belongs to another user
            StoreError: any other store failure
        """
        if isinstance(identity, Deferred):
            return WriteOutcome.skipped(identity.reason)

        user_id = identity.user_id

        if event_type == RevenueCatEventType.INITIAL_PURCHASE and not snapshot.is_trial:
            await self._supersede_trials(user_id)

        try:
            if isinstance(identity, Resolved) and identity.record is not None:
                subscription_id = await self._with_active_retry(
                    self._update_existing, user_id, identity.record.id, snapshot
                )
            else:
                subscription_id = await self._with_active_retry(
                    self._upsert_new, user_id, snapshot
                )
        except ForeignKeyViolation:
            logger.warning(
                "User %s does not exist yet; skipping write for %s",
                user_id,
                snapshot.rc_app_user_id,
            )
            return WriteOutcome.skipped(USER_NOT_FOUND_MESSAGE, user_id=user_id)

        return WriteOutcome(written=True, user_id=user_id, subscription_id=subscription_id)

    async def deactivate_user(self, user_id: uuid.UUID) -> int:
        """Turn off every active record of a user (no entitlement left)."""
        return await self.store.deactivate(user_id)

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    async def _supersede_trials(self, user_id: uuid.UUID) -> None:
        try:
            count = await self.store.deactivate(user_id, trial_only=True)
        except StoreError as exc:
            logger.warning("Could not deactivate trial records for %s: %s", user_id, exc)
            return
        if count:
            logger.info("Deactivated %d trial record(s) for %s after purchase", count, user_id)

    async def _with_active_retry(self, operation, *args) -> uuid.UUID:
        attempt = 0
        while True:
            try:
                return await operation(*args)
            except UniqueViolation as exc:
                if exc.column != "user_id" or attempt >= MAX_ACTIVE_CONFLICT_RETRIES:
                    raise
                attempt += 1
                logger.warning(
                    "Concurrent activation for user %s, retrying write", args[0]
                )

    async def _update_existing(
        self,
        user_id: uuid.UUID,
        target_id: uuid.UUID,
        snapshot: SubscriptionSnapshot,
    ) -> uuid.UUID:
        values = snapshot.to_values()

        if snapshot.is_active:
            deactivated = await self.store.deactivate(user_id, exclude_id=target_id)
            if deactivated:
                logger.info("Deactivated %d other record(s) for %s", deactivated, user_id)

        try:
            await self.store.update(target_id, values)
            return target_id
        except UniqueViolation as exc:
            if exc.column != "rc_app_user_id":
                raise

        # Another record already owns this RevenueCat id
        owner = await self.store.find_by_rc_app_user_id(snapshot.rc_app_user_id)
        if owner is None:
            raise StoreError(
                f"Record owning {snapshot.rc_app_user_id} disappeared during write"
            )

        if owner.user_id != user_id:
            logger.error(
                "Identity conflict: %s is owned by user %s, event resolved to %s",
                snapshot.rc_app_user_id,
                owner.user_id,
                user_id,
            )
            raise IdentityConflictError(snapshot.rc_app_user_id, owner.user_id, user_id)

        logger.info(
            "Redirecting write for %s from record %s to %s",
            snapshot.rc_app_user_id,
            target_id,
            owner.id,
        )
        if snapshot.is_active:
            await self.store.deactivate(user_id, exclude_id=owner.id)
        else:
            await self.store.update(target_id, {"is_active": False})
        await self.store.update(owner.id, values)
        return owner.id

    async def _upsert_new(
        self,
        user_id: uuid.UUID,
        snapshot: SubscriptionSnapshot,
    ) -> uuid.UUID:
        values = snapshot.to_values()

        if snapshot.is_active:
            existing = await self.store.find_by_rc_app_user_id(snapshot.rc_app_user_id)
            await self.store.deactivate(
                user_id, exclude_id=existing.id if existing is not None else None
            )

        subscription_id = await self.store.upsert(values)
        if subscription_id is None:
            owner = await self.store.find_by_rc_app_user_id(snapshot.rc_app_user_id)
            owner_user_id = owner.user_id if owner is not None else None
            logger.error(
                "Identity conflict: %s is owned by user %s, event resolved to %s",
                snapshot.rc_app_user_id,
                owner_user_id,
                user_id,
            )
            raise IdentityConflictError(snapshot.rc_app_user_id, owner_user_id, user_id)

        return subscription_id
