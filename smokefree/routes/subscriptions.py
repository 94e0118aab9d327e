"""
Subscription Routes
Authenticated endpoints for activating, checking, purchasing, managing and
canceling the Premium subscription.

Every endpoint reconciles through the shared service; errors are rendered by
the registered exception handlers as `{"success": false, "error": ...}`.
"""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from smokefree.schemas.subscriptions import (
    ActivateSubscriptionRequest,
    ActivateSubscriptionResponse,
    CancelSubscriptionResponse,
    CheckoutResponse,
    CheckSubscriptionResponse,
    CreateCheckoutRequest,
    PortalResponse,
    UnlockCodeRequest,
    UnlockCodeResponse,
)
from smokefree.security.deps import get_current_user
from smokefree.services.subscriptions import SubscriptionService
from smokefree.utils.security_validators import truncate_identifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Subscriptions"])

# Initialize subscription service
subscription_service = SubscriptionService.create()


@router.post("/activate-subscription", response_model=ActivateSubscriptionResponse)
async def activate_subscription(
    request: ActivateSubscriptionRequest, current_user: dict[str, Any] = Depends(get_current_user)
):
    """
    Confirm a completed checkout right after Stripe redirects back.

    Verifies the session belongs to the caller, reconciles the entitlement and
    records the captured payment. Safe to call more than once for one session.
    """
    logger.info(f"Activating subscription for user {truncate_identifier(current_user['id'])}")
    return await asyncio.to_thread(
        subscription_service.activate_subscription, current_user, request.session_id
    )


@router.post("/check-subscription", response_model=CheckSubscriptionResponse)
async def check_subscription(
    current_user: dict[str, Any] = Depends(get_current_user),
    premium_override: str | None = Header(None, alias="X-Premium-Override"),
):
    """
    Reconcile and report the caller's entitlement. Polled by the client every
    `poll_interval_seconds`.

    `subscribed` is Stripe's verdict alone; `premium` also honours a redeemed
    unlock code presented in the X-Premium-Override header.
    """
    return await asyncio.to_thread(
        subscription_service.check_subscription, current_user, premium_override
    )


@router.post("/create-checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    http_request: Request,
    current_user: dict[str, Any] = Depends(get_current_user),
):
    return await asyncio.to_thread(
        subscription_service.create_checkout,
        current_user,
        request.price_id,
        http_request.headers.get("origin"),
    )


@router.post("/customer-portal", response_model=PortalResponse)
async def customer_portal(
    http_request: Request, current_user: dict[str, Any] = Depends(get_current_user)
):
    return await asyncio.to_thread(
        subscription_service.customer_portal, current_user, http_request.headers.get("origin")
    )


@router.post("/handle-subscription-cancel", response_model=CancelSubscriptionResponse)
async def handle_subscription_cancel(current_user: dict[str, Any] = Depends(get_current_user)):
    """
    Cancel the caller's subscription and settle the refund.

    Refunds the latest payment when the subscription was trialing or that
    payment is recent enough; otherwise access runs to the end of the period.
    """
    logger.info(f"Cancellation requested by user {truncate_identifier(current_user['id'])}")
    return await asyncio.to_thread(subscription_service.cancel_subscription, current_user)


@router.post("/unlock-code", response_model=UnlockCodeResponse)
async def redeem_unlock_code(
    request: UnlockCodeRequest, current_user: dict[str, Any] = Depends(get_current_user)
):
    """Validate an unlock code. The client keeps the code only when `valid` is true."""
    valid = subscription_service.override_gate.validate_code(request.code)
    if valid:
        logger.info(f"Premium unlock code redeemed by user {truncate_identifier(current_user['id'])}")
    return UnlockCodeResponse(valid=valid)
