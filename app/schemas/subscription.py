"""
Subscription Schemas
====================

Pydantic schemas for RevenueCat webhook payloads and subscription endpoints.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


# ─── RevenueCat Webhook Event Types ──────────────────────────────────────────


class RevenueCatEventType(str, Enum):
    """Event types that drive the subscription state machine."""

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    BILLING_RETRY = "BILLING_RETRY"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RevenueCatEventType"]:
        """Return the matching member, or None for types we do not model."""
        if not value:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return None


class RevenueCatWebhookEvent(BaseModel):
    """
    The ``event`` object inside a RevenueCat webhook body:
    ``{ "api_version": "1.0", "event": { ... } }``

    ``type`` is kept as a free string so unknown event types still parse;
    fields we do not model are retained for the audit snapshot.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, description="Unique event ID")
    type: Optional[str] = None
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None
    product_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    entitlement_ids: Optional[list[str]] = None
    purchased_at_ms: Optional[int] = None
    expiration_at_ms: Optional[int] = None
    environment: Optional[str] = None
    store: Optional[str] = None
    price: Optional[float] = None
    is_trial_period: Optional[bool] = None
    offer_discount_type: Optional[str] = None
    offer_period: Optional[str] = None
    period_type: Optional[str] = None

    @property
    def event_type(self) -> Optional[RevenueCatEventType]:
        return RevenueCatEventType.parse(self.type)

    def raw(self) -> dict[str, Any]:
        """Full payload, passthrough fields included."""
        return self.model_dump(mode="json")


class RevenueCatWebhookPayload(BaseModel):
    """Top-level webhook body."""

    model_config = ConfigDict(extra="allow")

    api_version: Optional[str] = None
    event: RevenueCatWebhookEvent = Field(default_factory=RevenueCatWebhookEvent)


# ─── Webhook Responses ───────────────────────────────────────────────────────


class WebhookAck(BaseModel):
    """Body returned to RevenueCat for every 2xx outcome."""

    success: bool = True
    skipped: Optional[bool] = None
    duplicate: Optional[bool] = None
    message: Optional[str] = None


# ─── Sync ────────────────────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    """
    Body for ``POST /subscription/sync``.

    A signed-in caller may omit both ids; their own user id is used.
    """

    user_id: Optional[uuid.UUID] = None
    rc_app_user_id: Optional[str] = None
    sync_all: bool = False


class SyncResult(BaseModel):
    """Outcome of syncing one user from RevenueCat."""

    success: bool
    synced: bool = False
    user_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


class SyncAllResult(BaseModel):
    """Outcome of a bulk sync."""

    success: bool = True
    synced_count: int
    total: int
    results: list[SyncResult]


# ─── Status ──────────────────────────────────────────────────────────────────


class LifecycleStatus(str, Enum):
    """Coarse lifecycle state derived from the snapshot and the clock."""

    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionStatusData(BaseModel):
    """Current subscription state of a user."""

    user_id: uuid.UUID
    is_active: bool
    is_trial: bool
    will_renew: bool
    entitlement: str
    product_id: str
    current_period_end: Optional[datetime] = None
    days_until_expiration: Optional[int] = None
    status: LifecycleStatus


class SubscriptionStatusResponse(BaseModel):
    """Response for ``GET /subscription/status``."""

    success: bool = True
    data: Optional[SubscriptionStatusData] = None


# ─── Scheduled Jobs ──────────────────────────────────────────────────────────


class ExpiredTrial(BaseModel):
    """A trial record turned off by the expired-trial sweep."""

    user_id: uuid.UUID
    rc_app_user_id: str
    trial_expired_at: Optional[datetime] = None


class ExpiredTrialsResult(BaseModel):
    """Response for ``/cron/check-expired-trials``."""

    success: bool = True
    message: str
    expired_count: int
    expired_users: list[ExpiredTrial] = Field(default_factory=list)


class LifecycleEvent(BaseModel):
    """One record that needs attention, and what the sweep did about it."""

    user_id: uuid.UUID
    subscription_id: uuid.UUID
    event_type: LifecycleStatus
    days_until_expiration: int
    current_period_end: datetime
    timestamp: datetime
    actions_taken: list[str] = Field(default_factory=list)


class LifecycleResult(BaseModel):
    """Response for ``/cron/subscription-lifecycle``."""

    success: bool = True
    message: str
    processed: int
    events: list[LifecycleEvent] = Field(default_factory=list)
