"""
User Model
==========

SQLAlchemy model for user accounts.

Rows are created by the authentication provider; this service only reads
them and relies on the foreign key from ``user_subscriptions`` to reject
writes for users that do not exist yet.
"""

from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.subscription import UserSubscription


class User(Base, TimestampMixin):
    """
    User account model.
    """

    __tablename__ = "users"

    # Primary Key
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,  # Nullable for anonymous sign-ins
        index=True,
    )
    full_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Relationships
    subscriptions: Mapped[list["UserSubscription"]] = relationship(
        "UserSubscription",
        back_populates="user",
        order_by="desc(UserSubscription.created_at)",
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
