"""
Event Classification Tests
==========================

Tests for the pure event-to-snapshot functions:
- Event type classification table (and unrecognized types)
- Trial detection from independent signals
- Period end calculation
- Field normalization and snapshot building
"""

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.models.subscription import Store, SubscriptionEnvironment
from app.schemas.subscription import RevenueCatEventType, RevenueCatWebhookEvent
from app.services.subscription_events import (
    build_snapshot,
    calculate_period_end,
    classify_event_type,
    detect_trial,
    normalize_environment,
    normalize_store,
    resolve_entitlement,
)

USER_ID = uuid.UUID("3b241101-e2bb-4255-8caf-4136c566a962")
PURCHASED_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PURCHASED_AT_MS = int(PURCHASED_AT.timestamp() * 1000)


def _event(**fields) -> RevenueCatWebhookEvent:
    fields.setdefault("app_user_id", str(USER_ID))
    return RevenueCatWebhookEvent(**fields)


# ---------------------------------------------------------------------------
# classify_event_type
# ---------------------------------------------------------------------------

class TestClassifyEventType:
    """Every modelled event type maps to concrete booleans."""

    @pytest.mark.parametrize(
        "event_type, expected",
        [
            (RevenueCatEventType.INITIAL_PURCHASE, (True, True)),
            (RevenueCatEventType.RENEWAL, (True, True)),
            (RevenueCatEventType.PRODUCT_CHANGE, (True, True)),
            (RevenueCatEventType.CANCELLATION, (True, False)),
            (RevenueCatEventType.EXPIRATION, (False, False)),
            (RevenueCatEventType.BILLING_ISSUE, (True, True)),
            (RevenueCatEventType.BILLING_RETRY, (True, True)),
            (RevenueCatEventType.SUBSCRIPTION_PAUSED, (False, False)),
            (RevenueCatEventType.SUBSCRIPTION_RESUMED, (True, True)),
        ],
    )
    def test_table(self, event_type, expected):
        status = classify_event_type(event_type)

        assert (status.is_active, status.will_renew) == expected
        assert status.recognized is True

    def test_covers_every_member(self):
        for event_type in RevenueCatEventType:
            status = classify_event_type(event_type)
            assert isinstance(status.is_active, bool)
            assert isinstance(status.will_renew, bool)

    def test_unrecognized_keeps_previous_flags(self):
        previous = SimpleNamespace(
            is_active=False,
            will_renew=True,
            current_period_end=None,
            original_purchase_at=None,
        )

        status = classify_event_type(None, previous)

        assert status.is_active is False
        assert status.will_renew is True
        assert status.recognized is False

    def test_unrecognized_without_previous_defaults_to_active(self):
        status = classify_event_type(None)

        assert status.is_active is True
        assert status.will_renew is True

    def test_type_parsing_is_case_insensitive(self):
        assert RevenueCatEventType.parse("renewal") is RevenueCatEventType.RENEWAL
        assert RevenueCatEventType.parse("SUBSCRIBER_ALIAS") is None
        assert RevenueCatEventType.parse(None) is None


# ---------------------------------------------------------------------------
# detect_trial
# ---------------------------------------------------------------------------

class TestDetectTrial:
    """Any single trial signal is enough."""

    def test_explicit_flag(self):
        assert detect_trial(_event(is_trial_period=True)) is True

    def test_zero_price_overrides_false_flag(self):
        assert detect_trial(_event(is_trial_period=False, price=0)) is True

    def test_known_offer_period_alone(self):
        assert detect_trial(_event(offer_period="P3D")) is True

    def test_free_trial_discount_type(self):
        assert detect_trial(_event(offer_discount_type="free_trial")) is True

    def test_paid_event_is_not_trial(self):
        event = _event(is_trial_period=False, price=9.99, offer_period="P1M")

        assert detect_trial(event) is False

    def test_missing_price_is_not_zero(self):
        assert detect_trial(_event()) is False


# ---------------------------------------------------------------------------
# calculate_period_end
# ---------------------------------------------------------------------------

class TestCalculatePeriodEnd:

    @pytest.mark.parametrize(
        "offer_period, days",
        [("P3D", 3), ("P7D", 7), ("P1W", 7), ("P2M", 3), (None, 3)],
    )
    def test_trial_uses_purchase_time(self, offer_period, days):
        expiration = PURCHASED_AT + timedelta(days=30)

        result = calculate_period_end(
            is_trial=True,
            offer_period=offer_period,
            purchased_at=PURCHASED_AT,
            expiration_at=expiration,
        )

        assert result == PURCHASED_AT + timedelta(days=days)

    def test_trial_default_window_is_configurable(self):
        result = calculate_period_end(
            is_trial=True,
            offer_period=None,
            purchased_at=PURCHASED_AT,
            expiration_at=None,
            default_trial_days=5,
        )

        assert result == PURCHASED_AT + timedelta(days=5)

    def test_paid_uses_expiration_verbatim(self):
        expiration = PURCHASED_AT + timedelta(days=30)

        result = calculate_period_end(
            is_trial=False,
            offer_period="P3D",
            purchased_at=PURCHASED_AT,
            expiration_at=expiration,
        )

        assert result == expiration

    def test_trial_without_purchase_time_falls_back_to_expiration(self):
        expiration = PURCHASED_AT + timedelta(days=2)

        result = calculate_period_end(
            is_trial=True,
            offer_period="P3D",
            purchased_at=None,
            expiration_at=expiration,
        )

        assert result == expiration


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalization:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("APP_STORE", Store.APP_STORE),
            ("ios", Store.APP_STORE),
            ("MAC_APP_STORE", Store.APP_STORE),
            ("PLAY_STORE", Store.PLAY_STORE),
            ("android", Store.PLAY_STORE),
            ("STRIPE", Store.STRIPE),
            ("PROMOTIONAL", Store.APP_STORE),
            (None, Store.APP_STORE),
        ],
    )
    def test_store(self, raw, expected):
        assert normalize_store(raw) is expected

    def test_environment(self):
        assert normalize_environment("sandbox") is SubscriptionEnvironment.SANDBOX
        assert normalize_environment("PRODUCTION") is SubscriptionEnvironment.PRODUCTION
        assert normalize_environment(None) is SubscriptionEnvironment.PRODUCTION

    def test_entitlement_fallbacks(self):
        assert resolve_entitlement(_event(entitlement_id="gold")) == "gold"
        assert resolve_entitlement(_event(entitlement_ids=["plus", "pro"])) == "plus"
        assert resolve_entitlement(_event()) == "pro"


# ---------------------------------------------------------------------------
# build_snapshot
# ---------------------------------------------------------------------------

class TestBuildSnapshot:

    def test_trial_purchase(self):
        event = _event(
            type="INITIAL_PURCHASE",
            product_id="monthly_pro",
            price=0,
            offer_period="P3D",
            purchased_at_ms=PURCHASED_AT_MS,
            store="APP_STORE",
            environment="SANDBOX",
        )

        snapshot = build_snapshot(event, USER_ID)

        assert snapshot.user_id == USER_ID
        assert snapshot.rc_app_user_id == str(USER_ID)
        assert snapshot.rc_original_app_user_id == str(USER_ID)
        assert snapshot.is_active is True
        assert snapshot.is_trial is True
        assert snapshot.will_renew is True
        assert snapshot.current_period_end == PURCHASED_AT + timedelta(days=3)
        assert snapshot.original_purchase_at == PURCHASED_AT
        assert snapshot.environment is SubscriptionEnvironment.SANDBOX
        assert snapshot.rc_snapshot["offer_period"] == "P3D"

    def test_keeps_first_purchase_and_period_from_previous(self):
        first_purchase = PURCHASED_AT - timedelta(days=60)
        previous = SimpleNamespace(
            is_active=True,
            will_renew=True,
            current_period_end=PURCHASED_AT + timedelta(days=10),
            original_purchase_at=first_purchase,
        )
        event = _event(type="BILLING_ISSUE", purchased_at_ms=PURCHASED_AT_MS)

        snapshot = build_snapshot(event, USER_ID, previous)

        assert snapshot.original_purchase_at == first_purchase
        assert snapshot.current_period_end == previous.current_period_end

    def test_unknown_type_inherits_flags(self):
        previous = SimpleNamespace(
            is_active=False,
            will_renew=False,
            current_period_end=None,
            original_purchase_at=None,
        )
        event = _event(type="TRANSFER", price=4.99)

        snapshot = build_snapshot(event, USER_ID, previous)

        assert snapshot.is_active is False
        assert snapshot.will_renew is False
        assert snapshot.is_trial is False

    def test_passthrough_fields_are_kept_for_audit(self):
        event = _event(type="RENEWAL", country_code="NL", takehome_percentage=0.7)

        snapshot = build_snapshot(event, USER_ID)

        assert snapshot.rc_snapshot["country_code"] == "NL"
        assert snapshot.product_id == "unknown"
