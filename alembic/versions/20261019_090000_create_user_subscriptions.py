"""Create users and user_subscriptions

Creates the subscription snapshot table with:
- unique rc_app_user_id
- a partial unique index allowing one active row per user
- foreign key to users (rejects writes for users that do not exist yet)

Revision ID: 3f9c1e7a2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1e7a2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


STORE_VALUES = ("app_store", "play_store", "stripe")
ENVIRONMENT_VALUES = ("SANDBOX", "PRODUCTION")


def upgrade() -> None:
    # =========================================================================
    # users
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        if_not_exists=True,
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True, if_not_exists=True)

    # =========================================================================
    # Enum types
    # =========================================================================
    subscription_store = postgresql.ENUM(*STORE_VALUES, name="subscription_store", create_type=False)
    subscription_store.create(op.get_bind(), checkfirst=True)

    subscription_environment = postgresql.ENUM(
        *ENVIRONMENT_VALUES, name="subscription_environment", create_type=False
    )
    subscription_environment.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # user_subscriptions
    # =========================================================================
    op.create_table(
        "user_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("rc_app_user_id", sa.String(255), nullable=False),
        sa.Column("rc_original_app_user_id", sa.String(255), nullable=True),
        sa.Column("entitlement", sa.String(100), nullable=False, server_default="pro"),
        sa.Column("product_id", sa.String(255), nullable=False, server_default="unknown"),
        sa.Column("store", subscription_store, nullable=False, server_default="app_store"),
        sa.Column("environment", subscription_environment, nullable=False, server_default="PRODUCTION"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("will_renew", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_purchase_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rc_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.user_id"],
            name="fk_user_subscriptions_user_id_users",
            ondelete="CASCADE",
        ),
    )

    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index(
        "ix_user_subscriptions_rc_original_app_user_id",
        "user_subscriptions",
        ["rc_original_app_user_id"],
    )
    op.create_index(
        "uq_user_subscriptions_rc_app_user_id",
        "user_subscriptions",
        ["rc_app_user_id"],
        unique=True,
    )
    op.create_index(
        "uq_user_subscriptions_one_active_per_user",
        "user_subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )
    op.create_index(
        "idx_user_subscriptions_user_created",
        "user_subscriptions",
        ["user_id", "created_at"],
    )
    op.create_index(
        "idx_user_subscriptions_active_period_end",
        "user_subscriptions",
        ["current_period_end"],
        postgresql_where=sa.text("is_active"),
    )


def downgrade() -> None:
    op.drop_index("idx_user_subscriptions_active_period_end", table_name="user_subscriptions")
    op.drop_index("idx_user_subscriptions_user_created", table_name="user_subscriptions")
    op.drop_index("uq_user_subscriptions_one_active_per_user", table_name="user_subscriptions")
    op.drop_index("uq_user_subscriptions_rc_app_user_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_rc_original_app_user_id", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    postgresql.ENUM(name="subscription_environment").drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name="subscription_store").drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
