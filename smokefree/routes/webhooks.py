"""
Stripe Webhook Route

Stripe Dashboard > Developers > Webhooks must point at /stripe-webhook with
these events selected:
- checkout.session.completed
- customer.subscription.updated
- customer.subscription.deleted
- invoice.payment_succeeded
- invoice.payment_failed

The signing secret goes in STRIPE_WEBHOOK_SECRET.
"""

import asyncio
import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from smokefree.services.stripe_webhooks import StripeWebhookProcessor
from smokefree.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Stripe Webhooks"])

webhook_processor = StripeWebhookProcessor.from_subscription_service(SubscriptionService.create())


@router.post("/stripe-webhook", status_code=200)
async def stripe_webhook(
    request: Request, stripe_signature: str | None = Header(None, alias="stripe-signature")
):
    """
    Verify and process one Stripe event.

    Returns 200 for processed, duplicate, ignored and upstream-rejected events,
    400 for signature failures, and 500 when Stripe or the database is
    unavailable so that Stripe redelivers.
    """
    payload = await request.body()

    result = await asyncio.to_thread(webhook_processor.handle_webhook, payload, stripe_signature)

    logger.info(f"Webhook processed: {result.event_type} - {result.message}")

    return JSONResponse(
        status_code=200,
        content={
            "success": result.success,
            "event_type": result.event_type,
            "event_id": result.event_id,
            "message": result.message,
            "processed_at": result.processed_at.isoformat(),
        },
    )
