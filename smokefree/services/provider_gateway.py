#!/usr/bin/env python3
"""
Stripe Provider Gateway
Read and write operations against Stripe, returned as plain snapshots.

The gateway never touches local storage. Every Stripe failure is classified as
either ProviderUnavailable (network, timeout, rate limit, 5xx: retry later) or
ProviderRejected (4xx: the referenced object is invalid).
"""

import logging
from collections.abc import Callable
from typing import Any

import stripe

from smokefree.config import Config
from smokefree.schemas.subscriptions import (
    CheckoutSessionSnapshot,
    CustomerSnapshot,
    PaymentIntentSnapshot,
    PortalSessionSnapshot,
    PriceSnapshot,
    RefundSnapshot,
    SubscriptionSnapshot,
)
from smokefree.services.prometheus_metrics import provider_errors_total
from smokefree.utils.exceptions import (
    EntitlementError,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)
from smokefree.utils.security_validators import sanitize_for_logging, truncate_identifier

logger = logging.getLogger(__name__)


def stripe_field(obj: Any, key: str) -> Any:
    """
    Read a field from a Stripe object or a plain dict.

    Item access is tried first: StripeObject exposes dict methods such as
    `items`, which would shadow fields of the same name under getattr.
    """
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, key, None)


def stripe_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return stripe_field(value, "id")


def coerce_to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    if not metadata:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    return {}


def _list_data(listing: Any) -> list[Any]:
    return list(stripe_field(listing, "data") or [])


class StripeGateway:
    """Facade over the Stripe SDK used by every reconciliation trigger"""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or Config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or Config.STRIPE_WEBHOOK_SECRET

        if not self.api_key:
            raise ValueError("STRIPE_SECRET_KEY not found in environment variables")

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook signature validation will fail"
            )

        stripe.api_key = self.api_key
        stripe.max_network_retries = Config.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=Config.STRIPE_TIMEOUT_SECONDS)

        logger.info("Stripe gateway initialized")

    # ==================== Error classification ====================

    @staticmethod
    def _classify(operation: str, exc: stripe.StripeError) -> EntitlementError:
        status = getattr(exc, "http_status", None)
        message = sanitize_for_logging(getattr(exc, "user_message", None) or str(exc))

        if isinstance(exc, stripe.APIConnectionError | stripe.RateLimitError | stripe.APIError):
            kind = "unavailable"
        elif isinstance(exc, stripe.AuthenticationError | stripe.PermissionError):
            # Our credentials are wrong; nothing the caller can fix
            kind = "unavailable"
            logger.error(f"Stripe rejected our credentials during {operation}: {message}")
        elif status is not None and status >= 500:
            kind = "unavailable"
        else:
            kind = "rejected"

        provider_errors_total.labels(operation=operation, kind=kind).inc()
        logger.warning(
            f"Stripe {operation} failed ({kind}, http_status={status}): {type(exc).__name__}: {message}"
        )

        if kind == "unavailable":
            return ProviderUnavailable()
        return ProviderRejected()

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            raise self._classify(operation, e) from e

    # ==================== Snapshots ====================

    @staticmethod
    def subscription_snapshot(subscription: Any) -> SubscriptionSnapshot:
        items = _list_data(stripe_field(subscription, "items"))
        first_item = items[0] if items else None
        price = stripe_field(first_item, "price")

        # Newer API versions carry the billing period on the item only
        period_start = stripe_field(subscription, "current_period_start") or stripe_field(
            first_item, "current_period_start"
        )
        period_end = stripe_field(subscription, "current_period_end") or stripe_field(
            first_item, "current_period_end"
        )

        return SubscriptionSnapshot(
            id=stripe_field(subscription, "id"),
            status=stripe_field(subscription, "status") or "incomplete",
            customer_id=stripe_id(stripe_field(subscription, "customer")),
            created=coerce_to_int(stripe_field(subscription, "created")),
            current_period_start=coerce_to_int(period_start),
            current_period_end=coerce_to_int(period_end),
            trial_end=coerce_to_int(stripe_field(subscription, "trial_end")),
            price_id=stripe_id(price),
            product_id=stripe_id(stripe_field(price, "product")),
            unit_amount=coerce_to_int(stripe_field(price, "unit_amount")),
            currency=stripe_field(price, "currency"),
            metadata=metadata_to_dict(stripe_field(subscription, "metadata")),
        )

    @staticmethod
    def payment_intent_snapshot(intent: Any) -> PaymentIntentSnapshot:
        return PaymentIntentSnapshot(
            id=stripe_field(intent, "id"),
            status=stripe_field(intent, "status") or "unknown",
            amount=coerce_to_int(stripe_field(intent, "amount")) or 0,
            currency=stripe_field(intent, "currency"),
            created=coerce_to_int(stripe_field(intent, "created")),
            customer_id=stripe_id(stripe_field(intent, "customer")),
        )

    @classmethod
    def checkout_session_snapshot(cls, session: Any) -> CheckoutSessionSnapshot:
        raw_subscription = stripe_field(session, "subscription")
        subscription = (
            cls.subscription_snapshot(raw_subscription)
            if raw_subscription is not None and not isinstance(raw_subscription, str)
            else None
        )
        customer = stripe_field(session, "customer")
        customer_email = (
            stripe_field(customer, "email") if customer is not None and not isinstance(customer, str) else None
        )
        customer_email = (
            customer_email
            or stripe_field(stripe_field(session, "customer_details"), "email")
            or stripe_field(session, "customer_email")
        )

        return CheckoutSessionSnapshot(
            id=stripe_field(session, "id"),
            mode=stripe_field(session, "mode"),
            status=stripe_field(session, "status"),
            payment_status=stripe_field(session, "payment_status"),
            url=stripe_field(session, "url"),
            created=coerce_to_int(stripe_field(session, "created")),
            customer_id=stripe_id(customer),
            customer_email=customer_email,
            client_reference_id=stripe_field(session, "client_reference_id"),
            subscription_id=stripe_id(raw_subscription),
            subscription=subscription,
            payment_intent_id=stripe_id(stripe_field(session, "payment_intent")),
            invoice_id=stripe_id(stripe_field(session, "invoice")),
            amount_total=coerce_to_int(stripe_field(session, "amount_total")),
            currency=stripe_field(session, "currency"),
            price_id=subscription.price_id if subscription else None,
            metadata=metadata_to_dict(stripe_field(session, "metadata")),
        )

    @staticmethod
    def customer_snapshot(customer: Any) -> CustomerSnapshot:
        return CustomerSnapshot(
            id=stripe_field(customer, "id"),
            email=stripe_field(customer, "email"),
            metadata=metadata_to_dict(stripe_field(customer, "metadata")),
        )

    # ==================== Read side ====================

    def fetch_customer_by_email(self, email: str) -> CustomerSnapshot | None:
        listing = self._call("fetch_customer", stripe.Customer.list, email=email, limit=1)
        customers = _list_data(listing)
        if not customers:
            return None
        return self.customer_snapshot(customers[0])

    def retrieve_customer(self, customer_id: str) -> CustomerSnapshot | None:
        customer = self._call("retrieve_customer", stripe.Customer.retrieve, customer_id)
        if stripe_field(customer, "deleted"):
            return None
        return self.customer_snapshot(customer)

    def list_subscriptions(
        self, customer_id: str, status: str | None = "all", limit: int = 10
    ) -> list[SubscriptionSnapshot]:
        """
        List a customer's subscriptions. `status="all"` includes canceled ones,
        `None` uses Stripe's default (everything except canceled).
        """
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status
        listing = self._call("list_subscriptions", stripe.Subscription.list, **params)
        return [self.subscription_snapshot(sub) for sub in _list_data(listing)]

    def list_recent_payment_intents(
        self, customer_id: str, limit: int = 5
    ) -> list[PaymentIntentSnapshot]:
        """Most recent first, as returned by Stripe."""
        listing = self._call(
            "list_payment_intents", stripe.PaymentIntent.list, customer=customer_id, limit=limit
        )
        return [self.payment_intent_snapshot(pi) for pi in _list_data(listing)]

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return self.subscription_snapshot(subscription)

    def retrieve_checkout_session(
        self, session_id: str, expand: list[str] | None = None
    ) -> CheckoutSessionSnapshot:
        if not session_id or not session_id.startswith("cs_"):
            raise ProviderRejected("Invalid checkout session")
        session = self._call(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=expand or [],
        )
        return self.checkout_session_snapshot(session)

    def list_checkout_sessions(
        self, customer_id: str, limit: int = 3, status: str | None = None
    ) -> list[CheckoutSessionSnapshot]:
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status
        listing = self._call("list_checkout_sessions", stripe.checkout.Session.list, **params)
        sessions = []
        for session in _list_data(listing):
            snapshot = self.checkout_session_snapshot(session)
            # Listed sessions do not include line items; keep the price we stamped
            if not snapshot.price_id:
                snapshot.price_id = snapshot.metadata.get("price_id")
            sessions.append(snapshot)
        return sessions

    def retrieve_price(self, price_id: str) -> PriceSnapshot:
        price = self._call("retrieve_price", stripe.Price.retrieve, price_id)
        return PriceSnapshot(
            id=stripe_field(price, "id"),
            type=stripe_field(price, "type"),
            active=bool(stripe_field(price, "active")),
            product_id=stripe_id(stripe_field(price, "product")),
            unit_amount=coerce_to_int(stripe_field(price, "unit_amount")),
            currency=stripe_field(price, "currency"),
        )

    def retrieve_invoice_payment_intent(self, invoice_id: str) -> str | None:
        """
        PaymentIntent that settled an invoice, or None for unpaid / zero-amount
        invoices. Older API versions expose `invoice.payment_intent`; newer ones
        only list it under the `payments` field, which must be expanded.
        """
        invoice = self._call(
            "retrieve_invoice", stripe.Invoice.retrieve, invoice_id, expand=["payments"]
        )
        payment_intent_id = stripe_id(stripe_field(invoice, "payment_intent"))
        if payment_intent_id:
            return payment_intent_id

        for invoice_payment in _list_data(stripe_field(invoice, "payments")):
            payment = stripe_field(invoice_payment, "payment")
            payment_intent_id = stripe_id(stripe_field(payment, "payment_intent"))
            if payment_intent_id:
                return payment_intent_id
        return None

    # ==================== Write side ====================

    def create_customer(self, email: str, user_id: str) -> CustomerSnapshot:
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            metadata={"supabase_user_id": user_id},
            idempotency_key=f"customer:{user_id}",
        )
        return self.customer_snapshot(customer)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str | None = None,
    ) -> CheckoutSessionSnapshot:
        metadata = {"price_id": price_id}
        subscription_metadata = {}
        if user_id:
            metadata["supabase_user_id"] = user_id
            subscription_metadata["supabase_user_id"] = user_id

        session = self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            allow_promotion_codes=True,
            metadata=metadata,
            subscription_data={"metadata": subscription_metadata},
        )
        snapshot = self.checkout_session_snapshot(session)
        snapshot.price_id = price_id
        logger.info(
            f"Checkout session created: {truncate_identifier(snapshot.id)} "
            f"for customer {truncate_identifier(customer_id)}"
        )
        return snapshot

    def create_portal_session(self, customer_id: str, return_url: str) -> PortalSessionSnapshot:
        session = self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return PortalSessionSnapshot(id=stripe_field(session, "id"), url=stripe_field(session, "url"))

    def cancel_subscription(self, subscription_id: str) -> None:
        self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)
        logger.info(f"Subscription canceled at Stripe: {truncate_identifier(subscription_id)}")

    def issue_refund(
        self, payment_intent_id: str, reason: str = "requested_by_customer"
    ) -> RefundSnapshot:
        """
        Refund a payment intent in full. The idempotency key makes concurrent
        cancellation paths (webhook and explicit cancel) produce a single refund.
        """
        refund = self._call(
            "issue_refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            reason=reason,
            idempotency_key=f"refund:{payment_intent_id}",
        )
        return RefundSnapshot(
            id=stripe_field(refund, "id"),
            status=stripe_field(refund, "status"),
            amount=coerce_to_int(stripe_field(refund, "amount")),
            currency=stripe_field(refund, "currency"),
        )

    # ==================== Webhooks ====================

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """
        Verify the signature and parse a webhook payload.

        Raises:
            ValidationError: Missing secret/signature, bad signature or malformed payload
        """
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise ValidationError("Webhook secret not configured")
        if not signature:
            raise ValidationError("Missing stripe-signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {type(e).__name__}")
            raise ValidationError("Webhook signature verification failed") from e
