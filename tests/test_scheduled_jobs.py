"""
Scheduled Job Tests
===================

Tests for the expired-trial and lifecycle sweeps and their cron endpoints.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from app.schemas.subscription import LifecycleStatus
from app.services.scheduled_jobs import ScheduledJobService, determine_lifecycle_status
from conftest import CRON_SECRET

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestDetermineLifecycleStatus:

    @pytest.mark.parametrize(
        "offset, will_renew, expected, days",
        [
            (timedelta(days=-1), True, LifecycleStatus.EXPIRED, -1),
            (timedelta(hours=30), True, LifecycleStatus.EXPIRING_SOON, 2),
            (timedelta(days=3), True, LifecycleStatus.EXPIRING_SOON, 3),
            (timedelta(days=5), False, LifecycleStatus.CANCELLED, 5),
            (timedelta(days=5), True, LifecycleStatus.ACTIVE, 5),
            (timedelta(days=20), False, LifecycleStatus.ACTIVE, 20),
        ],
    )
    def test_classification(self, offset, will_renew, expected, days):
        status, remaining = determine_lifecycle_status(NOW + offset, will_renew, NOW)

        assert status is expected
        assert remaining == days

    def test_no_period_end_counts_as_active(self):
        assert determine_lifecycle_status(None, False, NOW) == (LifecycleStatus.ACTIVE, None)


class TestCheckExpiredTrials:

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, store):
        result = await ScheduledJobService(store).check_expired_trials(NOW)

        assert result.expired_count == 0
        assert result.message == "No active trials to check"

    @pytest.mark.asyncio
    async def test_deactivates_only_ended_trials(self, store):
        ended = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-ended",
            is_active=True,
            is_trial=True,
            current_period_end=NOW - timedelta(hours=1),
        )
        running = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-running",
            is_active=True,
            is_trial=True,
            current_period_end=NOW + timedelta(days=1),
        )
        paid = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-paid",
            is_active=True,
            current_period_end=NOW - timedelta(days=1),
        )

        result = await ScheduledJobService(store).check_expired_trials(NOW)

        assert result.expired_count == 1
        assert result.message == "Processed 1 expired trials"
        assert result.expired_users[0].user_id == ended.user_id
        assert store.rows[ended.id].is_active is False
        assert store.rows[running.id].is_active is True
        assert store.rows[paid.id].is_active is True

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, store):
        store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-ended",
            is_active=True,
            is_trial=True,
            current_period_end=NOW - timedelta(hours=1),
        )
        service = ScheduledJobService(store)

        await service.check_expired_trials(NOW)
        result = await service.check_expired_trials(NOW)

        assert result.expired_count == 0


class TestCheckSubscriptionLifecycle:

    @pytest.mark.asyncio
    async def test_events_and_actions(self, store):
        expired = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-expired",
            is_active=True,
            will_renew=True,
            current_period_end=NOW - timedelta(days=2),
        )
        expiring = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-expiring",
            is_active=True,
            will_renew=True,
            current_period_end=NOW + timedelta(days=2),
        )
        store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-healthy",
            is_active=True,
            will_renew=True,
            current_period_end=NOW + timedelta(days=25),
        )

        result = await ScheduledJobService(store).check_subscription_lifecycle(NOW)

        assert result.processed == 3
        by_id = {event.subscription_id: event for event in result.events}
        assert set(by_id) == {expired.id, expiring.id}
        assert by_id[expired.id].event_type is LifecycleStatus.EXPIRED
        assert by_id[expired.id].actions_taken == ["marked_subscription_inactive"]
        assert by_id[expiring.id].event_type is LifecycleStatus.EXPIRING_SOON
        assert by_id[expiring.id].actions_taken == []

        row = store.rows[expired.id]
        assert (row.is_active, row.will_renew) == (False, False)
        assert store.rows[expiring.id].is_active is True


class TestCronEndpoints:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["check-expired-trials", "subscription-lifecycle"])
    async def test_requires_cron_secret(self, client: AsyncClient, path):
        response = await client.post(
            f"/api/v1/cron/{path}", headers={"Authorization": "Bearer wrong"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_trials_endpoint(self, client: AsyncClient, store, redis_client):
        record = store.add_record(
            user_id=uuid.uuid4(),
            rc_app_user_id="rc-ended",
            is_active=True,
            is_trial=True,
            current_period_end=datetime.now(timezone.utc) - timedelta(hours=1),
        )

        response = await client.get(
            "/api/v1/cron/check-expired-trials",
            headers={"Authorization": f"Bearer {CRON_SECRET}"},
        )

        assert response.status_code == 200
        assert response.json()["expired_count"] == 1
        assert store.rows[record.id].is_active is False
        assert store.commits == 1
        redis_client.delete.assert_awaited_with(f"cache:subscription:status:{record.user_id}")

    @pytest.mark.asyncio
    async def test_lifecycle_endpoint(self, client: AsyncClient, store):
        response = await client.post(
            "/api/v1/cron/subscription-lifecycle",
            headers={"Authorization": f"Bearer {CRON_SECRET}"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["processed"] == 0
        assert data["events"] == []
