"""
Subscription Models
===================

SQLAlchemy model for the per-user subscription snapshot reconciled from
RevenueCat webhook events and client-driven syncs.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    false,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.user import User


# Constraint names are referenced when translating integrity errors.
RC_APP_USER_ID_CONSTRAINT = "uq_user_subscriptions_rc_app_user_id"
ONE_ACTIVE_PER_USER_CONSTRAINT = "uq_user_subscriptions_one_active_per_user"
USER_FOREIGN_KEY_CONSTRAINT = "fk_user_subscriptions_user_id_users"


class Store(str, Enum):
    """Store the purchase was made in."""
    APP_STORE = "app_store"
    PLAY_STORE = "play_store"
    STRIPE = "stripe"


class SubscriptionEnvironment(str, Enum):
    """RevenueCat environment the purchase belongs to."""
    SANDBOX = "SANDBOX"
    PRODUCTION = "PRODUCTION"


class UserSubscription(Base, TimestampMixin):
    """
    Current billing relationship of a user for one RevenueCat identity.

    Rows are never deleted; expiration and cancellation flip ``is_active``.
    At most one row per user may be active, and ``rc_app_user_id`` is
    unique across all rows.
    """

    __tablename__ = "user_subscriptions"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "users.user_id",
            ondelete="CASCADE",
            name=USER_FOREIGN_KEY_CONSTRAINT,
        ),
        nullable=False,
        index=True,
    )

    # RevenueCat identities
    rc_app_user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    rc_original_app_user_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Purchase details
    entitlement: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="pro",
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="unknown",
    )
    store: Mapped[Store] = mapped_column(
        SQLEnum(
            Store,
            name="subscription_store",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=Store.APP_STORE,
    )
    environment: Mapped[SubscriptionEnvironment] = mapped_column(
        SQLEnum(SubscriptionEnvironment, name="subscription_environment"),
        nullable=False,
        default=SubscriptionEnvironment.PRODUCTION,
    )

    # Derived state (never null)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    is_trial: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    will_renew: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    original_purchase_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Raw payload kept for audit/debugging
    rc_snapshot: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscriptions",
    )

    # Indexes
    __table_args__ = (
        Index(RC_APP_USER_ID_CONSTRAINT, "rc_app_user_id", unique=True),
        Index(
            ONE_ACTIVE_PER_USER_CONSTRAINT,
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
        ),
        Index("idx_user_subscriptions_user_created", "user_id", "created_at"),
        Index(
            "idx_user_subscriptions_active_period_end",
            "current_period_end",
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, rc_app_user_id={self.rc_app_user_id}, "
            f"active={self.is_active}, trial={self.is_trial})>"
        )
