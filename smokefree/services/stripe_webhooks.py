#!/usr/bin/env python3
"""
Stripe Webhook Processor

Verifies deliveries, skips event ids already in the ledger, and routes each
supported event type onto the reconciler (and, for deletions, the refund
policy). Unknown event types are acknowledged and logged.

Failure handling:
- Bad signature or payload: ValidationError (400), Stripe stops retrying.
- ProviderRejected while handling: acknowledged and recorded, retrying cannot help.
- ProviderUnavailable / InternalError: propagated (500) so Stripe redelivers.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from smokefree.db.entitlements import find_user_id_by_subscription, get_entitlement
from smokefree.db.users import find_user_id_by_email, get_user_email
from smokefree.db.webhook_events import is_event_processed, record_processed_event
from smokefree.schemas.subscriptions import (
    CancellationContext,
    EntitlementStatus,
    ReconcileTrigger,
    WebhookProcessingResult,
)
from smokefree.services.prometheus_metrics import webhook_events_total
from smokefree.services.provider_gateway import (
    StripeGateway,
    metadata_to_dict,
    stripe_field,
    stripe_id,
)
from smokefree.services.reconciler import Reconciler
from smokefree.services.refund_policy import RefundPolicy
from smokefree.services.subscriptions import SubscriptionService
from smokefree.utils.exceptions import EntitlementError, ProviderRejected
from smokefree.utils.security_validators import mask_email, truncate_identifier

logger = logging.getLogger(__name__)

USER_METADATA_KEY = "supabase_user_id"


class StripeWebhookProcessor:
    def __init__(
        self,
        gateway: StripeGateway,
        reconciler: Reconciler,
        refund_policy: RefundPolicy,
        subscription_service: SubscriptionService,
    ):
        self.gateway = gateway
        self.reconciler = reconciler
        self.refund_policy = refund_policy
        self.subscription_service = subscription_service

        self._handlers: dict[str, Callable[[Any, Any], str | None]] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
        }

    @classmethod
    def from_subscription_service(cls, service: SubscriptionService) -> "StripeWebhookProcessor":
        return cls(service.gateway, service.reconciler, service.refund_policy, service)

    @property
    def supported_events(self) -> list[str]:
        return sorted(self._handlers)

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify and process one webhook delivery.

        Raises:
            ValidationError: Signature verification failed
            ProviderUnavailable: Stripe unreachable while reconciling
            InternalError: Storage failure while reconciling
        """
        event = self.gateway.construct_event(payload, signature)
        event_id = stripe_field(event, "id")
        event_type = stripe_field(event, "type") or "unknown"

        logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

        if is_event_processed(event_id):
            webhook_events_total.labels(event_type=event_type, result="duplicate").inc()
            return self._result(event_type, event_id, f"Event {event_id} already processed (duplicate)")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type: {event_type}")
            webhook_events_total.labels(event_type=event_type, result="ignored").inc()
            return self._result(event_type, event_id, f"Event {event_type} ignored")

        data = stripe_field(event, "data")
        obj = stripe_field(data, "object")

        try:
            user_id = handler(obj, data)
        except ProviderRejected as e:
            logger.warning(f"Stripe rejected a lookup while handling {event_type} ({event_id}): {e.message}")
            webhook_events_total.labels(event_type=event_type, result="rejected").inc()
            record_processed_event(event_id, event_type, metadata={"outcome": "rejected"})
            return self._result(event_type, event_id, f"Event {event_type} acknowledged (rejected upstream)")
        except EntitlementError:
            webhook_events_total.labels(event_type=event_type, result="error").inc()
            logger.error(f"Webhook {event_type} ({event_id}) failed; Stripe will redeliver")
            raise

        record_processed_event(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            metadata={"stripe_account": stripe_field(event, "account")},
        )
        webhook_events_total.labels(event_type=event_type, result="processed").inc()
        return self._result(event_type, event_id, f"Event {event_type} processed successfully")

    @staticmethod
    def _result(event_type: str, event_id: str | None, message: str) -> WebhookProcessingResult:
        return WebhookProcessingResult(
            success=True,
            event_type=event_type,
            event_id=event_id,
            message=message,
            processed_at=datetime.now(UTC),
        )

    # ==================== User resolution ====================

    def _resolve_user_id(
        self,
        metadata: dict[str, Any],
        subscription_id: str | None = None,
        customer_id: str | None = None,
        email: str | None = None,
        client_reference_id: str | None = None,
    ) -> str | None:
        """
        Find the Supabase user a Stripe object belongs to.

        Order: metadata stamped at checkout, client_reference_id, the stored
        subscription id, the customer's metadata, and finally an email match.
        """
        user_id = metadata.get(USER_METADATA_KEY) or client_reference_id
        if user_id:
            return str(user_id)

        if subscription_id:
            user_id = find_user_id_by_subscription(subscription_id)
            if user_id:
                return user_id

        if customer_id:
            customer = self.gateway.retrieve_customer(customer_id)
            if customer is not None:
                user_id = customer.metadata.get(USER_METADATA_KEY)
                if user_id:
                    return str(user_id)
                email = email or customer.email

        if email:
            user_id = find_user_id_by_email(email)
            if user_id:
                return user_id

        logger.warning(
            f"Could not resolve user for subscription {truncate_identifier(subscription_id)} "
            f"(customer {truncate_identifier(customer_id)}, email {mask_email(email)})"
        )
        return None

    # ==================== Checkout ====================

    def _handle_checkout_completed(self, session: Any, data: Any) -> str | None:
        snapshot = self.gateway.checkout_session_snapshot(session)
        if snapshot.mode != "subscription" or not snapshot.subscription_id:
            logger.info(f"Checkout {truncate_identifier(snapshot.id)} is not a subscription checkout, skipping")
            return None

        user_id = self._resolve_user_id(
            snapshot.metadata,
            subscription_id=snapshot.subscription_id,
            customer_id=snapshot.customer_id,
            email=snapshot.customer_email,
            client_reference_id=snapshot.client_reference_id,
        )
        if not user_id:
            return None

        observed = snapshot.subscription or self.gateway.retrieve_subscription(snapshot.subscription_id)
        snapshot.subscription = observed

        result = self.reconciler.reconcile(
            user_id,
            ReconcileTrigger.CHECKOUT_COMPLETED,
            email=snapshot.customer_email,
            customer_id=snapshot.customer_id,
            observed=observed,
        )

        inserted = self.subscription_service.record_checkout_payment(user_id, snapshot)
        email = snapshot.customer_email or get_user_email(user_id)
        self.subscription_service.notify_activation(
            email,
            result,
            inserted,
            observed.unit_amount or snapshot.amount_total,
            observed.currency or snapshot.currency,
        )
        return user_id

    # ==================== Subscriptions ====================

    def _handle_subscription_updated(self, subscription: Any, data: Any) -> str | None:
        snapshot = self.gateway.subscription_snapshot(subscription)
        user_id = self._resolve_user_id(
            snapshot.metadata, subscription_id=snapshot.id, customer_id=snapshot.customer_id
        )
        if not user_id:
            return None

        self.reconciler.reconcile(
            user_id,
            ReconcileTrigger.SUBSCRIPTION_UPDATED,
            customer_id=snapshot.customer_id,
            observed=snapshot,
        )
        return user_id

    def _handle_subscription_deleted(self, subscription: Any, data: Any) -> str | None:
        """
        Reconcile the deletion, then settle the refund unless the record was
        already canceled (the user-initiated path handled it) or another
        subscription still grants access.
        """
        snapshot = self.gateway.subscription_snapshot(subscription)
        user_id = self._resolve_user_id(
            snapshot.metadata, subscription_id=snapshot.id, customer_id=snapshot.customer_id
        )
        if not user_id:
            return None

        before = get_entitlement(user_id)

        result = self.reconciler.reconcile(
            user_id,
            ReconcileTrigger.SUBSCRIPTION_DELETED,
            customer_id=snapshot.customer_id,
            observed=snapshot,
        )

        if result.entitled:
            logger.info(
                f"Subscription {truncate_identifier(snapshot.id)} deleted but user "
                f"{truncate_identifier(user_id)} is still entitled; no refund evaluated"
            )
            return user_id

        if before is None or before.status in {EntitlementStatus.CANCELED, EntitlementStatus.PENDING}:
            logger.info(
                f"No live entitlement before deletion of {truncate_identifier(snapshot.id)}; "
                "refund already settled or not applicable"
            )
            return user_id

        if before.provider_subscription_id and before.provider_subscription_id != snapshot.id:
            logger.info(
                f"Deleted subscription {truncate_identifier(snapshot.id)} is not the one backing "
                f"user {truncate_identifier(user_id)}'s record; no refund evaluated"
            )
            return user_id

        previous_attributes = metadata_to_dict(stripe_field(data, "previous_attributes"))
        previous_status = previous_attributes.get("status") or before.status.value

        self.refund_policy.evaluate_refund(
            user_id,
            CancellationContext(
                user_id=user_id,
                customer_id=snapshot.customer_id,
                email=get_user_email(user_id),
                subscription_id=snapshot.id,
                previous_status=previous_status,
                trial_end=snapshot.trial_end,
                source="webhook",
            ),
        )
        return user_id

    # ==================== Invoices ====================

    @staticmethod
    def _invoice_subscription_id(invoice: Any) -> str | None:
        subscription_id = stripe_id(stripe_field(invoice, "subscription"))
        if subscription_id:
            return subscription_id
        # Newer API versions nest the reference under parent.subscription_details
        details = stripe_field(stripe_field(invoice, "parent"), "subscription_details")
        return stripe_id(stripe_field(details, "subscription"))

    def _reconcile_invoice(self, invoice: Any) -> str | None:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice is not tied to a subscription, skipping")
            return None

        observed = self.gateway.retrieve_subscription(subscription_id)
        user_id = self._resolve_user_id(
            observed.metadata,
            subscription_id=subscription_id,
            customer_id=observed.customer_id or stripe_id(stripe_field(invoice, "customer")),
            email=stripe_field(invoice, "customer_email"),
        )
        if not user_id:
            return None

        self.reconciler.reconcile(
            user_id,
            ReconcileTrigger.INVOICE,
            customer_id=observed.customer_id,
            observed=observed,
        )
        return user_id

    def _handle_invoice_paid(self, invoice: Any, data: Any) -> str | None:
        return self._reconcile_invoice(invoice)

    def _handle_invoice_payment_failed(self, invoice: Any, data: Any) -> str | None:
        logger.warning(
            f"Invoice payment failed for subscription "
            f"{truncate_identifier(self._invoice_subscription_id(invoice))}"
        )
        return self._reconcile_invoice(invoice)
