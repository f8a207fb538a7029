"""
Billing provider webhook endpoint.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from api.dependencies import get_billing_provider, get_webhook_processor
from api.middleware.rate_limit import RATE_LIMITS, limiter
from api.schemas.subscriptions import WebhookAck
from adapters.payments.stripe_adapter import StripeAdapter, StripeWebhookError
from core.domain.billing_events import InvalidEventError
from services.billing_webhooks import BillingWebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/billing", response_model=WebhookAck)
@limiter.limit(RATE_LIMITS["webhook"])
async def receive_billing_webhook(
    request: Request,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
    provider: StripeAdapter = Depends(get_billing_provider),
    processor: BillingWebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive a signed event from the billing provider.

    - 400: secret not configured, signature missing/invalid, or body unusable
    - 200: processed, ignored (unsupported type), dropped (unresolvable) or duplicate
    - 500: a handler failed; the provider will redeliver
    """
    body = await request.body()

    try:
        envelope = provider.construct_event(body, stripe_signature)
    except StripeWebhookError as e:
        logger.warning("Webhook rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed",
        )

    try:
        outcome = await processor.process(envelope)
    except InvalidEventError as e:
        logger.warning("Webhook rejected: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception:
        logger.exception(
            "Webhook handler failed for event %s (%s)",
            envelope.get("id"),
            envelope.get("type"),
            extra={"event_id": envelope.get("id"), "event_type": envelope.get("type")},
        )
        await processor.db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook handler failed",
        )

    return WebhookAck(received=True, outcome=outcome.value)
