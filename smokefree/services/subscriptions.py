#!/usr/bin/env python3
"""
Subscription Service
Thin adapters from the user-facing endpoints onto the reconciler, the refund
policy and the Stripe gateway.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from smokefree.config import Config
from smokefree.db.entitlements import insert_pending_if_absent, mark_canceled
from smokefree.db.payments import minor_to_major, record_payment
from smokefree.db.plans import resolve_plan_id
from smokefree.schemas.subscriptions import (
    ActivateSubscriptionResponse,
    CancellationContext,
    CancelSubscriptionResponse,
    CheckoutResponse,
    CheckoutSessionSnapshot,
    CheckSubscriptionResponse,
    EntitlementStatus,
    PaymentRecord,
    PortalResponse,
    ReconcileResult,
    ReconcileTrigger,
)
from smokefree.services.notifications import NotificationDispatcher
from smokefree.services.override_gate import OverrideGate
from smokefree.services.provider_gateway import StripeGateway
from smokefree.services.reconciler import Reconciler
from smokefree.services.refund_policy import RefundPolicy
from smokefree.utils.exceptions import ConflictError, EntitlementError, ProviderRejected, ValidationError
from smokefree.utils.security_validators import mask_email, truncate_identifier

logger = logging.getLogger(__name__)

PLAN_NAME = "Premium"

MESSAGE_REFUNDED = "Subscription canceled. Your refund will arrive within 3-5 business days."
MESSAGE_NO_REFUND = "Subscription canceled. Premium access remains until the end of the paid period."
MESSAGE_REFUND_FAILED = (
    "Subscription canceled. We could not process your refund automatically; "
    "our support team has been notified."
)
MESSAGE_PARTIAL_CANCEL = "Some of your subscriptions could not be canceled. Please try again."


def resolve_return_origin(origin: str | None) -> str:
    """Only configured frontend origins may receive checkout and portal redirects."""
    if origin:
        normalized = origin.rstrip("/")
        if normalized in Config.ALLOWED_ORIGINS:
            return normalized
        logger.warning("Ignoring unrecognized request origin for return URL")
    return Config.FRONTEND_URL.rstrip("/")


class SubscriptionService:
    """Entry points behind the /activate-subscription, /check-subscription, ... endpoints"""

    def __init__(
        self,
        gateway: StripeGateway,
        reconciler: Reconciler,
        refund_policy: RefundPolicy,
        notifier: NotificationDispatcher,
        override_gate: OverrideGate,
    ):
        self.gateway = gateway
        self.reconciler = reconciler
        self.refund_policy = refund_policy
        self.notifier = notifier
        self.override_gate = override_gate

    @classmethod
    def create(cls) -> "SubscriptionService":
        """Wire the service from environment configuration."""
        gateway = StripeGateway()
        notifier = NotificationDispatcher()
        return cls(
            gateway=gateway,
            reconciler=Reconciler(gateway),
            refund_policy=RefundPolicy(gateway, notifier),
            notifier=notifier,
            override_gate=OverrideGate(),
        )

    # ==================== Payments ====================

    def record_checkout_payment(
        self, user_id: str, session: CheckoutSessionSnapshot
    ) -> bool | None:
        """
        Record the charge captured by a paid checkout session.

        Returns:
            True if inserted, False if already recorded, None if nothing was captured
        """
        if session.payment_status != "paid":
            return None

        payment_intent_id = session.payment_intent_id or self._invoice_payment_intent(session.invoice_id)
        transaction_id = payment_intent_id or session.invoice_id or session.id
        subscription = session.subscription
        amount = session.amount_total
        currency = session.currency
        if subscription is not None and subscription.unit_amount is not None:
            amount = subscription.unit_amount
            currency = subscription.currency or currency
        currency = (currency or "usd").upper()

        return record_payment(
            PaymentRecord(
                user_id=user_id,
                amount=minor_to_major(amount, currency),
                currency=currency,
                status="completed",
                transaction_id=transaction_id,
                payment_method="stripe",
                metadata={
                    "subscription_id": session.subscription_id,
                    "session_id": session.id,
                    "price_id": session.price_id,
                    "invoice_id": session.invoice_id,
                },
            )
        )

    def _invoice_payment_intent(self, invoice_id: str | None) -> str | None:
        """
        PaymentIntent behind a checkout invoice, None for zero-amount invoices.

        Stripe outages propagate so every caller keys the payment the same way.
        """
        if not invoice_id:
            return None
        try:
            return self.gateway.retrieve_invoice_payment_intent(invoice_id)
        except ProviderRejected as e:
            logger.warning(
                f"Could not resolve payment intent for invoice {truncate_identifier(invoice_id)}: "
                f"{type(e).__name__}; recording under the invoice id"
            )
            return None

    def notify_activation(
        self,
        email: str | None,
        result: ReconcileResult,
        payment_inserted: bool | None,
        amount: int | None,
        currency: str | None,
    ) -> None:
        """
        Send the premium confirmation once per activation.

        When a charge was captured, the caller that inserted its payment record
        sends the email; the unique transaction id makes that exactly one caller.
        """
        if not result.entitled:
            return
        if payment_inserted is False:
            return
        if payment_inserted is None and not result.changed:
            return
        trial_end = result.record.trial_ends_at if result.record else None
        self.notifier.send_premium_confirmation(email, amount, currency, trial_end)

    # ==================== Activation ====================

    def activate_subscription(self, user: dict[str, Any], session_id: str | None) -> ActivateSubscriptionResponse:
        """
        Verify a completed checkout session belongs to the caller, reconcile, and
        record the captured payment.
        """
        if not session_id:
            raise ValidationError("sessionId is required")

        user_id = str(user["id"])
        email = user.get("email")

        session = self.gateway.retrieve_checkout_session(
            session_id, expand=["subscription", "customer"]
        )

        owner_matches = session.client_reference_id == user_id or (
            bool(email)
            and bool(session.customer_email)
            and session.customer_email.lower() == email.lower()
        )
        if not owner_matches:
            logger.warning(
                f"Checkout session {truncate_identifier(session.id)} does not belong to "
                f"{mask_email(email)}"
            )
            raise ProviderRejected("This checkout session belongs to another account", forbidden=True)

        if session.mode != "subscription" or not session.subscription_id:
            raise ProviderRejected("This checkout session is not a subscription checkout")

        observed = session.subscription or self.gateway.retrieve_subscription(session.subscription_id)

        result = self.reconciler.reconcile(
            user_id,
            ReconcileTrigger.ACTIVATION,
            email=email,
            customer_id=session.customer_id,
            observed=observed,
        )

        inserted = self.record_checkout_payment(user_id, session)
        self.notify_activation(
            email,
            result,
            inserted,
            observed.unit_amount or session.amount_total,
            observed.currency or session.currency,
        )

        record = result.record
        return ActivateSubscriptionResponse(
            success=True,
            subscribed=result.entitled,
            status=record.status.value if record else None,
            trial_end=record.trial_ends_at if record else None,
            current_period_end=record.current_period_end if record else None,
        )

    # ==================== Polling ====================

    def check_subscription(
        self, user: dict[str, Any], override_code: str | None = None
    ) -> CheckSubscriptionResponse:
        result = self.reconciler.reconcile(
            str(user["id"]), ReconcileTrigger.POLL, email=user.get("email")
        )
        record = result.record
        override_active = self.override_gate.validate_code(override_code) if override_code else False

        return CheckSubscriptionResponse(
            subscribed=result.entitled,
            plan_name=PLAN_NAME if result.entitled else None,
            subscription_end=record.current_period_end if record and result.entitled else None,
            status=record.status.value if record else None,
            premium=self.override_gate.is_entitled(result.entitled, override_active),
            poll_interval_seconds=Config.SUBSCRIPTION_POLL_INTERVAL_SECONDS,
        )

    # ==================== Checkout ====================

    def create_checkout(
        self, user: dict[str, Any], price_id: str | None, origin: str | None = None
    ) -> CheckoutResponse:
        if not price_id:
            raise ValidationError("priceId is required")

        user_id = str(user["id"])
        email = user.get("email")
        if not email:
            raise ValidationError("An email address is required to subscribe")

        price = self.gateway.retrieve_price(price_id)
        if not price.is_recurring or not price.active:
            raise ValidationError("Selected price is not a recurring plan")

        customer = self.gateway.fetch_customer_by_email(email)
        if customer is not None:
            existing = [
                sub for sub in self.gateway.list_subscriptions(customer.id, status=None) if sub.qualifies
            ]
            if existing:
                logger.info(
                    f"Checkout blocked for {mask_email(email)}: subscription "
                    f"{truncate_identifier(existing[0].id)} is {existing[0].status}"
                )
                raise ConflictError()

            reusable = self._find_reusable_session(customer.id, price_id)
            if reusable is not None:
                logger.info(f"Reusing open checkout session {truncate_identifier(reusable.id)}")
                return CheckoutResponse(url=reusable.url, session_id=reusable.id, reused=True)
        else:
            customer = self.gateway.create_customer(email, user_id)
            logger.info(f"Created Stripe customer {truncate_identifier(customer.id)} for {mask_email(email)}")

        base = resolve_return_origin(origin)
        session = self.gateway.create_checkout_session(
            customer.id,
            price_id,
            success_url=f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/premium?checkout=canceled",
            user_id=user_id,
        )

        insert_pending_if_absent(user_id, resolve_plan_id(price.product_id))

        return CheckoutResponse(url=session.url, session_id=session.id, reused=False)

    def _find_reusable_session(self, customer_id: str, price_id: str) -> CheckoutSessionSnapshot | None:
        cutoff = datetime.now(UTC) - timedelta(minutes=Config.CHECKOUT_DEDUPE_MINUTES)
        for session in self.gateway.list_checkout_sessions(customer_id, limit=3, status="open"):
            if session.payment_status != "unpaid" or not session.url or not session.created:
                continue
            if datetime.fromtimestamp(session.created, tz=UTC) < cutoff:
                continue
            if session.price_id and session.price_id != price_id:
                continue
            return session
        return None

    # ==================== Portal ====================

    def customer_portal(self, user: dict[str, Any], origin: str | None = None) -> PortalResponse:
        email = user.get("email")
        customer = self.gateway.fetch_customer_by_email(email) if email else None
        if customer is None:
            raise ProviderRejected("No billing account found")

        portal = self.gateway.create_portal_session(
            customer.id, return_url=f"{resolve_return_origin(origin)}/subscription"
        )
        return PortalResponse(url=portal.url)

    # ==================== Cancellation ====================

    def cancel_subscription(self, user: dict[str, Any]) -> CancelSubscriptionResponse:
        """
        Cancel at Stripe, settle the refund, then mark the record canceled.

        A Stripe failure on every cancel aborts before anything local changes.
        When only some cancels fail, the refund is settled for the canceled ones
        and the record is reconciled against what Stripe still holds. Refund
        failures never abort: the cancellation is reported with the refund error
        alongside.
        """
        user_id = str(user["id"])
        email = user.get("email")

        customer = self.gateway.fetch_customer_by_email(email) if email else None
        if customer is None:
            return CancelSubscriptionResponse(success=False, message="No subscription found")

        cancellable = [
            sub for sub in self.gateway.list_subscriptions(customer.id, status=None) if sub.qualifies
        ]
        if not cancellable:
            return CancelSubscriptionResponse(success=False, message="No active subscription to cancel")

        canceled = []
        failure = None
        for subscription in cancellable:
            try:
                self.gateway.cancel_subscription(subscription.id)
            except EntitlementError as e:
                logger.error(
                    f"Failed to cancel subscription {truncate_identifier(subscription.id)} for user "
                    f"{truncate_identifier(user_id)}: {type(e).__name__}"
                )
                failure = failure or e
            else:
                canceled.append(subscription)

        if not canceled:
            raise failure

        primary = max(canceled, key=lambda sub: (sub.created or 0, sub.current_period_end or 0))
        was_trialing = any(sub.status == EntitlementStatus.TRIALING.value for sub in canceled)

        decision = self.refund_policy.evaluate_refund(
            user_id,
            CancellationContext(
                user_id=user_id,
                customer_id=customer.id,
                email=email,
                subscription_id=primary.id,
                previous_status=(
                    EntitlementStatus.TRIALING.value if was_trialing else primary.status
                ),
                trial_end=primary.trial_end,
                source="user",
            ),
        )

        if failure is not None:
            # The subscription Stripe kept may still grant access
            self.reconciler.reconcile(
                user_id, ReconcileTrigger.SUBSCRIPTION_UPDATED, email=email, customer_id=customer.id
            )
            return CancelSubscriptionResponse(
                success=False,
                refunded=decision.refunded,
                message=MESSAGE_PARTIAL_CANCEL,
                refund_error=decision.error,
            )

        mark_canceled(user_id)

        if decision.refunded:
            message = MESSAGE_REFUNDED
        elif decision.error:
            message = MESSAGE_REFUND_FAILED
        else:
            message = MESSAGE_NO_REFUND

        return CancelSubscriptionResponse(
            success=True,
            refunded=decision.refunded,
            message=message,
            refund_error=decision.error,
        )
