"""
Subscription Store
==================

Record-store API over the ``user_subscriptions`` table.

Every mutating statement runs inside a SAVEPOINT so that a constraint
violation only rolls back that statement. Violations are surfaced as
``UniqueViolation`` (with the offending column) or ``ForeignKeyViolation``
so the writer can treat them as coordination signals; the surrounding
transaction stays usable and is committed once by the caller.
"""

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence
import uuid

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ForeignKeyViolation, StoreError, UniqueViolation
from app.models.subscription import (
    ONE_ACTIVE_PER_USER_CONSTRAINT,
    RC_APP_USER_ID_CONSTRAINT,
    UserSubscription,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"

_CONSTRAINT_COLUMNS = {
    RC_APP_USER_ID_CONSTRAINT: "rc_app_user_id",
    ONE_ACTIVE_PER_USER_CONSTRAINT: "user_id",
}

_CONSTRAINT_IN_MESSAGE = re.compile(r'constraint "([^"]+)"')


def translate_integrity_error(exc: IntegrityError) -> StoreError:
    """
    Convert a driver integrity error into a store error class.

    asyncpg exposes ``sqlstate`` on the adapted DBAPI error and
    ``constraint_name`` on the underlying asyncpg exception; the message
    is parsed as a last resort.
    """
    orig = exc.orig
    message = str(orig) if orig is not None else str(exc)

    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    constraint = getattr(orig, "constraint_name", None) or getattr(
        getattr(orig, "__cause__", None), "constraint_name", None
    )
    if constraint is None:
        match = _CONSTRAINT_IN_MESSAGE.search(message)
        if match:
            constraint = match.group(1)

    if sqlstate == FOREIGN_KEY_VIOLATION or "foreign key" in message.lower():
        return ForeignKeyViolation(message, constraint=constraint)

    if sqlstate == UNIQUE_VIOLATION or "duplicate key" in message.lower():
        column = _CONSTRAINT_COLUMNS.get(constraint or "")
        if column is None and "rc_app_user_id" in message:
            column = "rc_app_user_id"
        return UniqueViolation(message, constraint=constraint, column=column)

    return StoreError(message)


def upsert_statement(values: dict[str, Any]):
    """
    ``INSERT ... ON CONFLICT (rc_app_user_id) DO UPDATE`` guarded so that
    only a row of the same user is overwritten.
    """
    stmt = pg_insert(UserSubscription).values(**values)
    update_set = {
        key: stmt.excluded[key] for key in values if key != "original_purchase_at"
    }
    update_set["original_purchase_at"] = func.coalesce(
        UserSubscription.original_purchase_at,
        stmt.excluded.original_purchase_at,
    )
    update_set["updated_at"] = func.now()
    return stmt.on_conflict_do_update(
        index_elements=[UserSubscription.rc_app_user_id],
        set_=update_set,
        where=UserSubscription.user_id == stmt.excluded.user_id,
    ).returning(UserSubscription.id)


def deactivate_statement(
    user_id: uuid.UUID,
    *,
    exclude_id: Optional[uuid.UUID] = None,
    trial_only: bool = False,
):
    stmt = update(UserSubscription).where(
        UserSubscription.user_id == user_id,
        UserSubscription.is_active.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(UserSubscription.id != exclude_id)
    if trial_only:
        stmt = stmt.where(UserSubscription.is_trial.is_(True))

    return stmt.values(is_active=False, updated_at=func.now()).execution_options(
        synchronize_session=False
    )


class SubscriptionStore:
    """Point lookups, upsert and targeted updates for subscription records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Transaction control
    # -------------------------------------------------------------------------

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def rollback(self) -> None:
        await self.db.rollback()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        """Run the block in a SAVEPOINT; everything in it is undone if it raises."""
        try:
            async with self.db.begin_nested():
                yield
        except IntegrityError as exc:
            raise translate_integrity_error(exc) from exc
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    async def _first(self, stmt) -> Optional[UserSubscription]:
        try:
            result = await self.db.execute(
                stmt.limit(1).execution_options(populate_existing=True)
            )
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return result.scalars().first()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def find_latest_linked(self, provider_user_id: str) -> Optional[UserSubscription]:
        """Most recent record whose current or original RevenueCat id matches."""
        stmt = (
            select(UserSubscription)
            .where(
                or_(
                    UserSubscription.rc_app_user_id == provider_user_id,
                    UserSubscription.rc_original_app_user_id == provider_user_id,
                )
            )
            .order_by(UserSubscription.created_at.desc())
        )
        return await self._first(stmt)

    async def find_latest_for_user(self, user_id: uuid.UUID) -> Optional[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(UserSubscription.created_at.desc())
        )
        return await self._first(stmt)

    async def find_active_for_user(self, user_id: uuid.UUID) -> Optional[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.is_active.is_(True),
            )
            .order_by(UserSubscription.created_at.desc())
        )
        return await self._first(stmt)

    async def find_by_rc_app_user_id(self, rc_app_user_id: str) -> Optional[UserSubscription]:
        return await self._first(
            select(UserSubscription).where(
                UserSubscription.rc_app_user_id == rc_app_user_id
            )
        )

    async def list_active(
        self,
        *,
        trial_only: bool = False,
        period_ended_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> Sequence[UserSubscription]:
        stmt = select(UserSubscription).where(UserSubscription.is_active.is_(True))
        if trial_only:
            stmt = stmt.where(UserSubscription.is_trial.is_(True))
        if period_ended_before is not None:
            stmt = stmt.where(UserSubscription.current_period_end < period_ended_before)
        stmt = stmt.order_by(UserSubscription.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            result = await self.db.execute(stmt.execution_options(populate_existing=True))
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return result.scalars().all()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def upsert(self, values: dict[str, Any]) -> Optional[uuid.UUID]:
        """
        Insert a record, or update the one that already owns its
        ``rc_app_user_id``. The first purchase time is never overwritten.

        Returns None when the existing owner of ``rc_app_user_id`` belongs
        to a different user; that row is left untouched.
        """
        async with self.savepoint():
            result = await self.db.execute(upsert_statement(values))
            return result.scalar_one_or_none()

    async def update(self, subscription_id: uuid.UUID, values: dict[str, Any]) -> int:
        stmt = (
            update(UserSubscription)
            .where(UserSubscription.id == subscription_id)
            .values(**values, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        async with self.savepoint():
            result = await self.db.execute(stmt)
            return result.rowcount

    async def deactivate(
        self,
        user_id: uuid.UUID,
        *,
        exclude_id: Optional[uuid.UUID] = None,
        trial_only: bool = False,
    ) -> int:
        """Flip ``is_active`` off for a user's active records; returns the count."""
        async with self.savepoint():
            result = await self.db.execute(
                deactivate_statement(user_id, exclude_id=exclude_id, trial_only=trial_only)
            )
            return result.rowcount
