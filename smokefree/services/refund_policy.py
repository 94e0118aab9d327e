#!/usr/bin/env python3
"""
Refund Policy Engine

On cancellation, refund the most recent successful payment when either
- the subscription was trialing right before it was canceled, or
- that payment succeeded no more than REFUND_WINDOW_HOURS ago (boundary inclusive).

Refund issuance never reverts the cancellation: failures are logged, reported
to Sentry and returned in the decision, but not retried here.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from smokefree.config import Config
from smokefree.db.entitlements import get_entitlement
from smokefree.db.payments import get_payment_by_transaction_id, update_payment_status
from smokefree.schemas.subscriptions import (
    CancellationContext,
    EntitlementStatus,
    PaymentIntentSnapshot,
    RefundDecision,
)
from smokefree.services.notifications import NotificationDispatcher
from smokefree.services.prometheus_metrics import refund_decisions_total
from smokefree.services.provider_gateway import StripeGateway
from smokefree.utils.exceptions import EntitlementError, InternalError
from smokefree.utils.security_validators import truncate_identifier
from smokefree.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

PAYMENT_LOOKBACK = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RefundPolicy:
    def __init__(
        self,
        gateway: StripeGateway,
        notifier: NotificationDispatcher,
        now: Callable[[], datetime] = _utcnow,
        window_hours: int | None = None,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self._now = now
        self.window = timedelta(
            hours=window_hours if window_hours is not None else Config.REFUND_WINDOW_HOURS
        )

    def was_trialing(self, user_id: str, context: CancellationContext) -> bool:
        """
        Status right before cancellation, most specific source first: the
        event's previous attributes, then the stored record, then a trial end
        that is still in the future.
        """
        if context.previous_status:
            return context.previous_status == EntitlementStatus.TRIALING.value

        try:
            record = get_entitlement(user_id)
        except InternalError:
            record = None
        if record is not None and record.status != EntitlementStatus.CANCELED:
            return record.status == EntitlementStatus.TRIALING

        if context.trial_end:
            return datetime.fromtimestamp(context.trial_end, tz=UTC) > self._now()
        return False

    def within_window(self, payment: PaymentIntentSnapshot) -> bool:
        if not payment.created:
            return False
        paid_at = datetime.fromtimestamp(payment.created, tz=UTC)
        return self._now() - paid_at <= self.window

    @staticmethod
    def latest_successful(payments: list[PaymentIntentSnapshot]) -> PaymentIntentSnapshot | None:
        succeeded = [p for p in payments if p.status == "succeeded"]
        if not succeeded:
            return None
        return max(succeeded, key=lambda p: p.created or 0)

    def evaluate_refund(self, user_id: str, context: CancellationContext) -> RefundDecision:
        """
        Decide on and, when owed, issue a refund for the latest payment.

        Never raises for provider failures; those come back as
        `refunded=False` with `error` set.
        """
        decision = self._evaluate(user_id, context)
        refund_decisions_total.labels(outcome=self._outcome(decision)).inc()
        logger.info(
            f"Refund decision for user {truncate_identifier(user_id)}: "
            f"refunded={decision.refunded} reason={decision.reason}"
        )
        return decision

    @staticmethod
    def _outcome(decision: RefundDecision) -> str:
        if decision.error:
            return "failed"
        if decision.refunded:
            return "refunded"
        if decision.eligible:
            return "skipped"
        return "not_eligible"

    def _evaluate(self, user_id: str, context: CancellationContext) -> RefundDecision:
        trialing = self.was_trialing(user_id, context)

        customer_id = context.customer_id
        try:
            if not customer_id and context.email:
                customer = self.gateway.fetch_customer_by_email(context.email)
                customer_id = customer.id if customer else None
            if not customer_id:
                return RefundDecision(eligible=trialing, refunded=False, reason="no_customer")

            payment = self.latest_successful(
                self.gateway.list_recent_payment_intents(customer_id, limit=PAYMENT_LOOKBACK)
            )
        except EntitlementError as e:
            return self._failed(user_id, context, None, e, eligible=trialing)

        if payment is None:
            return RefundDecision(eligible=trialing, refunded=False, reason="no_payment")

        in_window = self.within_window(payment)
        if not (trialing or in_window):
            return RefundDecision(
                eligible=False,
                refunded=False,
                reason="outside_window",
                payment_intent_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
            )

        reason = "trial_cancellation" if trialing else "within_window"

        try:
            local = get_payment_by_transaction_id(payment.id)
        except InternalError:
            # Stripe deduplicates the refund by idempotency key
            local = None
        if local and local.get("status") == "refunded":
            return RefundDecision(
                eligible=True,
                refunded=True,
                reason="already_refunded",
                payment_intent_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
            )

        try:
            refund = self.gateway.issue_refund(payment.id)
        except EntitlementError as e:
            return self._failed(user_id, context, payment, e, eligible=True)

        try:
            update_payment_status(payment.id, "refunded")
        except InternalError:
            # Refund stands even when the local status lags
            logger.error(
                f"Refund {truncate_identifier(refund.id)} issued but payment record update failed"
            )

        self.notifier.send_refund_notice(context.email, payment.amount, payment.currency)

        return RefundDecision(
            eligible=True,
            refunded=True,
            reason=reason,
            payment_intent_id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
            refund_id=refund.id,
        )

    def _failed(
        self,
        user_id: str,
        context: CancellationContext,
        payment: PaymentIntentSnapshot | None,
        error: EntitlementError,
        eligible: bool,
    ) -> RefundDecision:
        logger.error(
            f"Refund attempt failed for user {truncate_identifier(user_id)} "
            f"(subscription {truncate_identifier(context.subscription_id)}): {type(error).__name__}"
        )
        capture_payment_error(
            error,
            operation="refund",
            user_id=user_id,
            details={
                "subscription_id": context.subscription_id,
                "payment_intent_id": payment.id if payment else None,
                "source": context.source,
            },
        )
        return RefundDecision(
            eligible=eligible,
            refunded=False,
            reason="refund_failed",
            payment_intent_id=payment.id if payment else None,
            amount=payment.amount if payment else None,
            currency=payment.currency if payment else None,
            error=error.message,
        )
