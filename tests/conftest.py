"""
Shared Test Fixtures
====================

- An in-memory record store with the same API and constraint errors as
  ``SubscriptionStore`` (unique rc_app_user_id, one active row per user,
  user foreign key), with commit/rollback semantics
- Redis replaced by an ``AsyncMock`` client
- An ``httpx.AsyncClient`` bound to the app over ASGI
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("REVENUECAT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REVENUECAT_API_KEY", "test-revenuecat-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import copy
from contextlib import asynccontextmanager
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.errors import ForeignKeyViolation, StoreError, UniqueViolation
from app.core.security import create_access_token
from app.models.subscription import (
    ONE_ACTIVE_PER_USER_CONSTRAINT,
    RC_APP_USER_ID_CONSTRAINT,
    USER_FOREIGN_KEY_CONSTRAINT,
    Store,
    SubscriptionEnvironment,
)

WEBHOOK_SECRET = os.environ["REVENUECAT_WEBHOOK_SECRET"]
CRON_SECRET = os.environ["CRON_SECRET"]

BASE_TIME = datetime(2026, 3, 1, tzinfo=timezone.utc)


@dataclass
class Row:
    """Plain stand-in for a ``user_subscriptions`` row."""

    user_id: uuid.UUID
    rc_app_user_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    rc_original_app_user_id: Optional[str] = None
    entitlement: str = "pro"
    product_id: str = "unknown"
    store: Store = Store.APP_STORE
    environment: SubscriptionEnvironment = SubscriptionEnvironment.PRODUCTION
    is_active: bool = False
    is_trial: bool = False
    will_renew: bool = False
    current_period_end: Optional[datetime] = None
    original_purchase_at: Optional[datetime] = None
    rc_snapshot: Optional[dict] = None
    created_at: datetime = BASE_TIME
    updated_at: datetime = BASE_TIME


class InMemorySubscriptionStore:
    """
    Record store backed by a dict.

    Writes are all-or-nothing per call, like the SAVEPOINT-wrapped SQL
    statements. ``rollback`` restores the last committed state.
    """

    def __init__(self, users=()):
        self.users: set[uuid.UUID] = set(users)
        self.rows: dict[uuid.UUID, Row] = {}
        self._committed: dict[uuid.UUID, Row] = {}
        self._clock = 0
        self._failures: dict[str, list[Exception]] = {}
        self.commits = 0
        self.rollbacks = 0

    # -- test helpers -------------------------------------------------------

    def add_user(self, user_id: Optional[uuid.UUID] = None) -> uuid.UUID:
        user_id = user_id or uuid.uuid4()
        self.users.add(user_id)
        return user_id

    def add_record(self, **values: Any) -> Row:
        """Seed a committed row, bypassing constraint checks."""
        row = Row(created_at=self._tick(), **values)
        self.users.add(row.user_id)
        self.rows[row.id] = row
        self._committed = copy.deepcopy(self.rows)
        return row

    def fail_next(self, method: str, exc: Exception) -> None:
        self._failures.setdefault(method, []).append(exc)

    def active_rows(self, user_id: uuid.UUID) -> list[Row]:
        return [r for r in self.rows.values() if r.user_id == user_id and r.is_active]

    def _tick(self) -> datetime:
        self._clock += 1
        return BASE_TIME + timedelta(seconds=self._clock)

    def _check_failure(self, method: str) -> None:
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _check_constraints(self, candidate: Row) -> None:
        if candidate.user_id not in self.users:
            raise ForeignKeyViolation(
                "insert or update violates foreign key constraint",
                constraint=USER_FOREIGN_KEY_CONSTRAINT,
            )
        for other in self.rows.values():
            if other.id == candidate.id:
                continue
            if other.rc_app_user_id == candidate.rc_app_user_id:
                raise UniqueViolation(
                    "duplicate key value violates unique constraint",
                    constraint=RC_APP_USER_ID_CONSTRAINT,
                    column="rc_app_user_id",
                )
            if candidate.is_active and other.is_active and other.user_id == candidate.user_id:
                raise UniqueViolation(
                    "duplicate key value violates unique constraint",
                    constraint=ONE_ACTIVE_PER_USER_CONSTRAINT,
                    column="user_id",
                )

    @staticmethod
    def _latest(rows: list[Row]) -> Optional[Row]:
        return max(rows, key=lambda r: r.created_at) if rows else None

    # -- transaction control ------------------------------------------------

    async def commit(self) -> None:
        self._check_failure("commit")
        self._committed = copy.deepcopy(self.rows)
        self.commits += 1

    async def rollback(self) -> None:
        self.rows = copy.deepcopy(self._committed)
        self.rollbacks += 1

    @asynccontextmanager
    async def savepoint(self):
        checkpoint = copy.deepcopy(self.rows)
        try:
            yield
        except Exception:
            self.rows = checkpoint
            raise

    # -- lookups ------------------------------------------------------------

    async def find_latest_linked(self, provider_user_id: str) -> Optional[Row]:
        self._check_failure("find_latest_linked")
        return self._latest([
            r for r in self.rows.values()
            if provider_user_id in (r.rc_app_user_id, r.rc_original_app_user_id)
        ])

    async def find_latest_for_user(self, user_id: uuid.UUID) -> Optional[Row]:
        self._check_failure("find_latest_for_user")
        return self._latest([r for r in self.rows.values() if r.user_id == user_id])

    async def find_active_for_user(self, user_id: uuid.UUID) -> Optional[Row]:
        return self._latest(self.active_rows(user_id))

    async def find_by_rc_app_user_id(self, rc_app_user_id: str) -> Optional[Row]:
        self._check_failure("find_by_rc_app_user_id")
        for row in self.rows.values():
            if row.rc_app_user_id == rc_app_user_id:
                return row
        return None

    async def list_active(
        self,
        *,
        trial_only: bool = False,
        period_ended_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Row]:
        self._check_failure("list_active")
        rows = [r for r in self.rows.values() if r.is_active]
        if trial_only:
            rows = [r for r in rows if r.is_trial]
        if period_ended_before is not None:
            rows = [
                r for r in rows
                if r.current_period_end is not None and r.current_period_end < period_ended_before
            ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    # -- writes -------------------------------------------------------------

    async def upsert(self, values: dict[str, Any]) -> Optional[uuid.UUID]:
        self._check_failure("upsert")
        existing = await self.find_by_rc_app_user_id(values["rc_app_user_id"])

        if existing is None:
            candidate = Row(created_at=self._tick(), **values)
        else:
            if existing.user_id != values["user_id"]:
                return None
            merged = dict(values)
            merged["original_purchase_at"] = (
                existing.original_purchase_at or values.get("original_purchase_at")
            )
            candidate = replace(existing, **merged, updated_at=self._tick())

        self._check_constraints(candidate)
        self.rows[candidate.id] = candidate
        return candidate.id

    async def update(self, subscription_id: uuid.UUID, values: dict[str, Any]) -> int:
        self._check_failure("update")
        row = self.rows.get(subscription_id)
        if row is None:
            return 0

        candidate = replace(row, **values, updated_at=self._tick())
        self._check_constraints(candidate)
        self.rows[subscription_id] = candidate
        return 1

    async def deactivate(
        self,
        user_id: uuid.UUID,
        *,
        exclude_id: Optional[uuid.UUID] = None,
        trial_only: bool = False,
    ) -> int:
        self._check_failure("deactivate")
        count = 0
        for row in self.active_rows(user_id):
            if row.id == exclude_id or (trial_only and not row.is_trial):
                continue
            self.rows[row.id] = replace(row, is_active=False, updated_at=self._tick())
            count += 1
        return count


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture(autouse=True)
def redis_client():
    """Redis stand-in; every cache call sees an empty cache by default."""
    client = AsyncMock()
    client.get.return_value = None
    client.exists.return_value = 0
    client.delete.return_value = 0
    with patch("app.services.cache.get_redis", return_value=client):
        yield client


@pytest_asyncio.fixture
async def client(store):
    from app.dependencies import get_subscription_store
    from app.main import app

    app.dependency_overrides[get_subscription_store] = lambda: store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def user_token():
    """Build a session JWT for a user id."""
    def _make(user_id: uuid.UUID) -> str:
        return create_access_token({"sub": str(user_id)})
    return _make


@pytest.fixture
def store_error() -> StoreError:
    return StoreError("connection refused")
