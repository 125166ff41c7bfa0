"""
Identity Resolution
===================

Maps the RevenueCat identity on an event to an internal user.

Resolution order:
1. A record already linked to the RevenueCat id (or the event's original id)
2. The RevenueCat id itself, when it is formatted as an internal user id
3. Otherwise defer until the next authenticated app sync
"""

from dataclasses import dataclass
from typing import Optional, Union
import uuid

from app.models.subscription import UserSubscription
from app.services.subscription_store import SubscriptionStore
from app.utils.validators import parse_user_id


@dataclass(frozen=True)
class Resolved:
    """The identity is already linked to a user, possibly via an existing record."""

    user_id: uuid.UUID
    record: Optional[UserSubscription] = None

    @property
    def existing_record_id(self) -> Optional[uuid.UUID]:
        return self.record.id if self.record is not None else None


@dataclass(frozen=True)
class CandidateUnauthenticated:
    """
    The RevenueCat id looks like an internal user id but nothing links it
    yet. The user row may not exist, so writes must tolerate a missing user.
    """

    user_id: uuid.UUID


@dataclass(frozen=True)
class Deferred:
    """No user can be determined from this event."""

    reason: str


IdentityResolution = Union[Resolved, CandidateUnauthenticated, Deferred]


def classify_identity(
    provider_user_id: Optional[str],
    *,
    linked: Optional[UserSubscription] = None,
    owned: Optional[UserSubscription] = None,
) -> IdentityResolution:
    """
    Decide the resolution from lookups already performed.

    ``linked`` is the latest record carrying the RevenueCat id; ``owned`` is
    the latest record of the user the id parses to.
    """
    if linked is not None:
        return Resolved(user_id=linked.user_id, record=linked)

    if not provider_user_id:
        return Deferred(reason="Event has no app_user_id")

    candidate = parse_user_id(provider_user_id)
    if candidate is None:
        return Deferred(
            reason="Anonymous RevenueCat user; will be linked on next app sync"
        )

    if owned is not None:
        return Resolved(user_id=candidate, record=owned)

    return CandidateUnauthenticated(user_id=candidate)


async def resolve_identity(
    store: SubscriptionStore,
    provider_user_id: Optional[str],
    provider_original_user_id: Optional[str] = None,
) -> IdentityResolution:
    """
    Resolve an event's RevenueCat identity against the store.

    Lookup failures propagate as ``StoreError``.
    """
    if not provider_user_id:
        return classify_identity(provider_user_id)

    linked = await store.find_latest_linked(provider_user_id)
    if (
        linked is None
        and provider_original_user_id
        and provider_original_user_id != provider_user_id
    ):
        linked = await store.find_latest_linked(provider_original_user_id)

    if linked is not None:
        return classify_identity(provider_user_id, linked=linked)

    candidate = parse_user_id(provider_user_id)
    if candidate is None:
        return classify_identity(provider_user_id)

    owned = await store.find_latest_for_user(candidate)
    return classify_identity(provider_user_id, owned=owned)
