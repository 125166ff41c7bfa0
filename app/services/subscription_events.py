"""
Subscription Event Classification
=================================

Pure functions that turn a RevenueCat webhook event into the subscription
snapshot to persist. No I/O happens here.

- ``classify_event_type``: event type -> (is_active, will_renew)
- ``detect_trial``: OR of every trial signal RevenueCat may populate
- ``calculate_period_end``: authoritative end of the current period
- ``build_snapshot``: all of the above plus field normalization
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
import uuid

from app.models.subscription import Store, SubscriptionEnvironment
from app.schemas.subscription import RevenueCatEventType, RevenueCatWebhookEvent
from app.utils.helpers import from_epoch_ms

DEFAULT_ENTITLEMENT = "pro"
UNKNOWN_PRODUCT = "unknown"

# Trial offer-period codes (ISO 8601 durations) and their lengths
TRIAL_PERIOD_DURATIONS: dict[str, timedelta] = {
    "P3D": timedelta(days=3),
    "P7D": timedelta(days=7),
    "P1W": timedelta(days=7),
}

FREE_TRIAL_DISCOUNT_TYPE = "FREE_TRIAL"

# (is_active, will_renew) per event type
_EVENT_STATUS: dict[RevenueCatEventType, tuple[bool, bool]] = {
    RevenueCatEventType.INITIAL_PURCHASE: (True, True),
    RevenueCatEventType.RENEWAL: (True, True),
    RevenueCatEventType.PRODUCT_CHANGE: (True, True),
    # Access continues until the period ends
    RevenueCatEventType.CANCELLATION: (True, False),
    RevenueCatEventType.EXPIRATION: (False, False),
    # Access continues while the store retries billing
    RevenueCatEventType.BILLING_ISSUE: (True, True),
    RevenueCatEventType.BILLING_RETRY: (True, True),
    RevenueCatEventType.SUBSCRIPTION_PAUSED: (False, False),
    RevenueCatEventType.SUBSCRIPTION_RESUMED: (True, True),
}

# Used for unrecognized events when there is no prior record to inherit from
_UNRECOGNIZED_DEFAULT = (True, True)

_STORE_ALIASES: dict[str, Store] = {
    "app_store": Store.APP_STORE,
    "ios": Store.APP_STORE,
    "mac_app_store": Store.APP_STORE,
    "play_store": Store.PLAY_STORE,
    "android": Store.PLAY_STORE,
    "stripe": Store.STRIPE,
}


class PriorState(Protocol):
    """The parts of an existing record the classifier may inherit."""

    is_active: bool
    will_renew: bool
    current_period_end: Optional[datetime]
    original_purchase_at: Optional[datetime]


@dataclass(frozen=True)
class EventStatus:
    """Active/renew flags for an event, always concrete booleans."""

    is_active: bool
    will_renew: bool
    recognized: bool


@dataclass
class SubscriptionSnapshot:
    """Fully computed column values for one ``user_subscriptions`` row."""

    user_id: uuid.UUID
    rc_app_user_id: str
    rc_original_app_user_id: str
    entitlement: str
    product_id: str
    store: Store
    environment: SubscriptionEnvironment
    is_active: bool
    is_trial: bool
    will_renew: bool
    current_period_end: Optional[datetime]
    original_purchase_at: Optional[datetime]
    rc_snapshot: Optional[dict[str, Any]]

    def to_values(self) -> dict[str, Any]:
        return asdict(self)


def classify_event_type(
    event_type: Optional[RevenueCatEventType],
    previous: Optional[PriorState] = None,
) -> EventStatus:
    """
    Map an event type to its (is_active, will_renew) pair.

    Unrecognized types keep whatever the previous record had; with no
    previous record they fall back to active and renewing.
    """
    if event_type is not None and event_type in _EVENT_STATUS:
        is_active, will_renew = _EVENT_STATUS[event_type]
        return EventStatus(is_active=is_active, will_renew=will_renew, recognized=True)

    if previous is not None:
        return EventStatus(
            is_active=bool(previous.is_active),
            will_renew=bool(previous.will_renew),
            recognized=False,
        )

    is_active, will_renew = _UNRECOGNIZED_DEFAULT
    return EventStatus(is_active=is_active, will_renew=will_renew, recognized=False)


def detect_trial(event: RevenueCatWebhookEvent) -> bool:
    """
    True when any trial signal is present on the event.

    RevenueCat does not populate the same field for every event type, so
    the explicit flag, the discount type, a known trial offer period and a
    zero price are each sufficient on their own.
    """
    if event.is_trial_period:
        return True
    if (event.offer_discount_type or "").upper() == FREE_TRIAL_DISCOUNT_TYPE:
        return True
    if (event.offer_period or "").upper() in TRIAL_PERIOD_DURATIONS:
        return True
    if event.price is not None and event.price == 0:
        return True
    return False


def calculate_period_end(
    *,
    is_trial: bool,
    offer_period: Optional[str],
    purchased_at: Optional[datetime],
    expiration_at: Optional[datetime],
    default_trial_days: int = 3,
) -> Optional[datetime]:
    """
    Authoritative end of the current billing period.

    Trials are recomputed from the purchase time because RevenueCat's
    expiration field is unreliable for short promotional offers. Paid
    periods use the event's expiration verbatim.
    """
    if is_trial and purchased_at is not None:
        duration = TRIAL_PERIOD_DURATIONS.get(
            (offer_period or "").upper(),
            timedelta(days=default_trial_days),
        )
        return purchased_at + duration

    return expiration_at


def normalize_store(store: Optional[str]) -> Store:
    """Map RevenueCat's store string onto the closed Store set."""
    if not store:
        return Store.APP_STORE
    return _STORE_ALIASES.get(store.lower(), Store.APP_STORE)


def normalize_environment(environment: Optional[str]) -> SubscriptionEnvironment:
    if (environment or "").upper() == SubscriptionEnvironment.SANDBOX.value:
        return SubscriptionEnvironment.SANDBOX
    return SubscriptionEnvironment.PRODUCTION


def resolve_entitlement(event: RevenueCatWebhookEvent) -> str:
    if event.entitlement_id:
        return event.entitlement_id
    if event.entitlement_ids:
        return event.entitlement_ids[0]
    return DEFAULT_ENTITLEMENT


def build_snapshot(
    event: RevenueCatWebhookEvent,
    user_id: uuid.UUID,
    previous: Optional[PriorState] = None,
    *,
    default_trial_days: int = 3,
) -> SubscriptionSnapshot:
    """
    Compute every column of the record this event should leave behind.

    ``previous`` is the record the event resolved to, if any. It supplies
    the flags for unrecognized event types, the period end when the event
    carries none, and the first purchase time, which is never overwritten.
    """
    status = classify_event_type(event.event_type, previous)
    is_trial = detect_trial(event)

    purchased_at = from_epoch_ms(event.purchased_at_ms)
    current_period_end = calculate_period_end(
        is_trial=is_trial,
        offer_period=event.offer_period,
        purchased_at=purchased_at,
        expiration_at=from_epoch_ms(event.expiration_at_ms),
        default_trial_days=default_trial_days,
    )
    if current_period_end is None and previous is not None:
        current_period_end = previous.current_period_end

    original_purchase_at = purchased_at
    if previous is not None and previous.original_purchase_at is not None:
        original_purchase_at = previous.original_purchase_at

    return SubscriptionSnapshot(
        user_id=user_id,
        rc_app_user_id=event.app_user_id,
        rc_original_app_user_id=event.original_app_user_id or event.app_user_id,
        entitlement=resolve_entitlement(event),
        product_id=event.product_id or UNKNOWN_PRODUCT,
        store=normalize_store(event.store),
        environment=normalize_environment(event.environment),
        is_active=status.is_active,
        is_trial=is_trial,
        will_renew=status.will_renew,
        current_period_end=current_period_end,
        original_purchase_at=original_purchase_at,
        rc_snapshot=event.raw(),
    )
