"""
Webhooks API Endpoints
======================

Handles webhooks from RevenueCat.

Authentication:
    The shared secret REVENUECAT_WEBHOOK_SECRET is read from, in order, the
    ``secret`` query parameter, the ``X-Provider-Signature`` header, or the
    ``Authorization`` header (a non-JWT bearer token or the raw value). The
    first two can be disabled with REVENUECAT_WEBHOOK_LEGACY_AUTH=false.

Responses:
    200 for applied, duplicate and deferred events (deferred ones carry
    ``skipped: true``) so RevenueCat stops redelivering them. 500 only for
    genuine processing or storage failures, which RevenueCat will retry.

Idempotency:
    Each RevenueCat event has a unique ``id``. Processed event IDs are kept
    in Redis (with TTL) to short-circuit redeliveries; the write path is
    idempotent on its own.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Request, Response, status

from app.config import settings
from app.core.errors import (
    AuthenticationError,
    ErrorCodes,
    IdentityConflictError,
    ProcessingError,
    StoreError,
)
from app.core.security import extract_webhook_token, secrets_match
from app.dependencies import SubscriptionStoreDep
from app.schemas.common import ErrorResponse
from app.schemas.subscription import RevenueCatWebhookPayload, WebhookAck
from app.services.cache import (
    CacheInvalidator,
    is_event_processed,
    mark_event_processed,
)
from app.services.revenuecat import RevenueCatService
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.options("/revenuecat", status_code=status.HTTP_204_NO_CONTENT)
async def revenuecat_webhook_preflight() -> Response:
    """CORS preflight."""
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/revenuecat")
async def revenuecat_webhook_probe():
    """Liveness probe for the webhook URL."""
    return {
        "message": "RevenueCat webhook endpoint is live",
        "timestamp": utc_now().isoformat(),
    }


def _verify_webhook_authorization(
    secret: Optional[str],
    signature: Optional[str],
    authorization: Optional[str],
) -> None:
    if not settings.REVENUECAT_WEBHOOK_SECRET:
        logger.error("REVENUECAT_WEBHOOK_SECRET not configured")
        raise ProcessingError(
            code=ErrorCodes.WEBHOOK_NOT_CONFIGURED,
            message="Configuration error",
        )

    token = extract_webhook_token(
        query_secret=secret,
        signature_header=signature,
        authorization=authorization,
        allow_legacy=settings.REVENUECAT_WEBHOOK_LEGACY_AUTH,
    )
    if not secrets_match(token, settings.REVENUECAT_WEBHOOK_SECRET):
        logger.warning("Unauthorized RevenueCat webhook attempt")
        raise AuthenticationError(
            code=ErrorCodes.WEBHOOK_UNAUTHORIZED,
            message="Invalid webhook authorization",
        )


async def _parse_payload(request: Request) -> RevenueCatWebhookPayload:
    try:
        body = await request.body()
        return RevenueCatWebhookPayload.model_validate(json.loads(body.decode("utf-8")))
    except ValueError as e:
        logger.error("Invalid webhook payload: %s", e)
        raise ProcessingError(
            code=ErrorCodes.WEBHOOK_INVALID_PAYLOAD,
            message="Invalid JSON payload",
        )


@router.post(
    "/revenuecat",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def revenuecat_webhook(
    request: Request,
    store: SubscriptionStoreDep,
    secret: Optional[str] = Query(default=None),
    x_provider_signature: Optional[str] = Header(default=None, alias="X-Provider-Signature"),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
):
    """
    Handle RevenueCat webhook events.

    Events handled:
    - INITIAL_PURCHASE, RENEWAL, PRODUCT_CHANGE
    - CANCELLATION, EXPIRATION
    - BILLING_ISSUE, BILLING_RETRY
    - SUBSCRIPTION_PAUSED, SUBSCRIPTION_RESUMED

    Other event types are applied without changing active/renew state.
    """
    _verify_webhook_authorization(secret, x_provider_signature, authorization)

    payload = await _parse_payload(request)
    event = payload.event

    logger.info(
        "Webhook received: type=%s user=%s event_id=%s",
        event.type,
        event.app_user_id,
        event.id,
    )

    # ── Idempotency check ─────────────────────────────────────────────────
    if event.id and await is_event_processed(event.id):
        logger.info("Duplicate webhook event %s, skipping", event.id)
        return WebhookAck(duplicate=True)

    # ── Process event ─────────────────────────────────────────────────────
    revenuecat_service = RevenueCatService(store)
    try:
        outcome = await revenuecat_service.process_webhook_event(event)
        await store.commit()
    except IdentityConflictError as e:
        await store.rollback()
        logger.error(
            "Data integrity issue for event %s: %s",
            event.id,
            e,
        )
        raise ProcessingError(
            code=ErrorCodes.SUB_IDENTITY_CONFLICT,
            message="Subscription identity conflict",
        )
    except StoreError:
        logger.exception(
            "Webhook processing error: type=%s user=%s event_id=%s",
            event.type,
            event.app_user_id,
            event.id,
        )
        await store.rollback()
        # 500 so RevenueCat will retry
        raise ProcessingError(
            code=ErrorCodes.WEBHOOK_PROCESSING_FAILED,
            message="Error processing webhook",
        )

    if not outcome.written:
        logger.info(
            "Webhook skipped: type=%s user=%s reason=%s",
            event.type,
            event.app_user_id,
            outcome.skipped_reason,
        )
        return WebhookAck(skipped=True, message=outcome.skipped_reason)

    # Mark event as processed (after successful commit)
    if event.id:
        await mark_event_processed(event.id)

    await CacheInvalidator.on_subscription_change(str(outcome.user_id))

    logger.info(
        "Webhook processed: type=%s user=%s subscription=%s",
        event.type,
        outcome.user_id,
        outcome.subscription_id,
    )
    return WebhookAck()
