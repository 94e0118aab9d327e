#!/usr/bin/env python3
"""
Entitlement Reconciler

Single entry point every trigger (webhook, post-checkout activation, client
poll, scheduled sweep) uses to bring a user's `subscriptions` row in line with
Stripe.

Rules:
- No Stripe customer means "not entitled" and nothing is written.
- Among active/trialing subscriptions the newest `created` wins, ties broken by
  the latest `current_period_end`.
- An active/trialing record is only downgraded by a definitive trigger or by a
  listing that shows its subscription as canceled/past_due/unpaid. An empty
  read alone never revokes access.
- Writes are upserts keyed on user_id; missing timestamps fall back to
  now / now + DEFAULT_PERIOD_DAYS instead of failing.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from smokefree.config import Config
from smokefree.db.entitlements import get_entitlement, upsert_entitlement
from smokefree.db.plans import resolve_plan_id
from smokefree.db.users import get_user_email
from smokefree.schemas.subscriptions import (
    CONFIRMED_INACTIVE_STATUSES,
    EntitlementRecord,
    EntitlementStatus,
    ReconcileResult,
    ReconcileTrigger,
    SubscriptionSnapshot,
)
from smokefree.services.prometheus_metrics import reconciliation_duration, reconciliations_total
from smokefree.services.provider_gateway import StripeGateway
from smokefree.utils.exceptions import EntitlementError
from smokefree.utils.security_validators import mask_email, truncate_identifier

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _from_epoch(value: int | None) -> datetime | None:
    """Epoch seconds to an aware datetime; non-positive or out-of-range values are invalid."""
    if value is None or value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def select_subscription(candidates: list[SubscriptionSnapshot]) -> SubscriptionSnapshot | None:
    """Pick the subscription that grants entitlement, or None if none qualifies."""
    qualifying = [sub for sub in candidates if sub.qualifies]
    if not qualifying:
        return None
    return max(qualifying, key=lambda sub: (sub.created or 0, sub.current_period_end or 0))


class Reconciler:
    """Compares Stripe truth with the stored entitlement and applies the minimal write"""

    def __init__(self, gateway: StripeGateway, now: Callable[[], datetime] = _utcnow):
        self.gateway = gateway
        self._now = now

    def reconcile(
        self,
        user_id: str,
        trigger: ReconcileTrigger,
        *,
        email: str | None = None,
        customer_id: str | None = None,
        observed: SubscriptionSnapshot | None = None,
    ) -> ReconcileResult:
        """
        Reconcile one user.

        Args:
            user_id: Supabase auth user id
            trigger: What caused this run; decides whether an empty read may downgrade
            email: Caller email used to find the Stripe customer
            customer_id: Stripe customer id when the trigger already knows it
            observed: Subscription carried by the trigger (webhook payload, checkout
                session); used only when the fresh listing does not contain it yet

        Raises:
            ProviderUnavailable: Stripe could not be reached; never means "not entitled"
            ProviderRejected: Stripe rejected a lookup
            InternalError: Storage read/write failed
        """
        started = time.monotonic()
        try:
            result = self._reconcile(user_id, trigger, email, customer_id, observed)
        except EntitlementError as e:
            reconciliations_total.labels(trigger=trigger.value, outcome="error").inc()
            logger.warning(
                f"Reconciliation failed for user {truncate_identifier(user_id)} "
                f"(trigger={trigger.value}): {type(e).__name__}"
            )
            raise
        finally:
            reconciliation_duration.labels(trigger=trigger.value).observe(time.monotonic() - started)

        return result

    def _reconcile(
        self,
        user_id: str,
        trigger: ReconcileTrigger,
        email: str | None,
        customer_id: str | None,
        observed: SubscriptionSnapshot | None,
    ) -> ReconcileResult:
        existing = get_entitlement(user_id)

        customer_id = customer_id or (observed.customer_id if observed else None)
        if not customer_id:
            email = email or get_user_email(user_id)
            customer = self.gateway.fetch_customer_by_email(email) if email else None
            if customer is None:
                logger.info(
                    f"No Stripe customer for {mask_email(email)}; user "
                    f"{truncate_identifier(user_id)} not entitled (trigger={trigger.value})"
                )
                reconciliations_total.labels(trigger=trigger.value, outcome="not_entitled").inc()
                return ReconcileResult.not_entitled(existing)
            customer_id = customer.id

        candidates = {sub.id: sub for sub in self.gateway.list_subscriptions(customer_id)}
        # The fresh listing wins; the trigger's copy only covers a listing that lags behind
        if observed is not None and observed.id not in candidates:
            candidates[observed.id] = observed
        listing = list(candidates.values())

        selected = select_subscription(listing)
        if selected is not None:
            return self._apply_entitled(user_id, trigger, existing, selected, customer_id)

        return self._apply_unqualified(user_id, trigger, existing, listing, customer_id)

    # ==================== Qualifying subscription ====================

    def _apply_entitled(
        self,
        user_id: str,
        trigger: ReconcileTrigger,
        existing: EntitlementRecord | None,
        subscription: SubscriptionSnapshot,
        customer_id: str,
    ) -> ReconcileResult:
        now = self._now()
        same_subscription = (
            existing is not None and existing.provider_subscription_id == subscription.id
        )

        # Reuse stored bounds for the same subscription so repeated runs stay idempotent
        fallback_start = existing.current_period_start if same_subscription else None
        fallback_end = existing.current_period_end if same_subscription else None

        period_start = _from_epoch(subscription.current_period_start) or fallback_start or now
        period_end = (
            _from_epoch(subscription.current_period_end)
            or fallback_end
            or now + timedelta(days=Config.DEFAULT_PERIOD_DAYS)
        )
        status = EntitlementStatus(subscription.status)
        trial_ends_at = (
            _from_epoch(subscription.trial_end) if status == EntitlementStatus.TRIALING else None
        )

        record = EntitlementRecord(
            user_id=user_id,
            plan_id=resolve_plan_id(subscription.product_id),
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_ends_at=trial_ends_at,
            canceled_at=None,
            payment_provider="stripe",
            provider_subscription_id=subscription.id,
        )
        stored = upsert_entitlement(record)

        created = existing is None
        changed = created or existing.status != status
        previous_status = existing.status if existing else None

        reconciliations_total.labels(trigger=trigger.value, outcome="entitled").inc()
        logger.info(
            f"Reconciled user {truncate_identifier(user_id)}: {previous_status.value if previous_status else 'none'} "
            f"-> {status.value} via {trigger.value} (subscription {truncate_identifier(subscription.id)}, "
            f"changed={changed})"
        )

        return ReconcileResult(
            record=stored,
            entitled=stored.is_entitled(now),
            changed=changed,
            created=created,
            previous_status=previous_status,
            customer_id=customer_id,
            subscription=subscription,
        )

    # ==================== No qualifying subscription ====================

    def _apply_unqualified(
        self,
        user_id: str,
        trigger: ReconcileTrigger,
        existing: EntitlementRecord | None,
        listing: list[SubscriptionSnapshot],
        customer_id: str,
    ) -> ReconcileResult:
        if existing is None:
            reconciliations_total.labels(trigger=trigger.value, outcome="not_entitled").inc()
            return ReconcileResult.not_entitled()

        # Records issued by another provider, pending checkouts and already
        # canceled records are outside this reconciliation
        if (
            existing.payment_provider != "stripe"
            or existing.status in {EntitlementStatus.PENDING, EntitlementStatus.CANCELED}
        ):
            return self._preserve(existing, trigger, customer_id, outcome="not_entitled")

        confirming = self._confirming_subscription(existing, listing)
        if confirming is None and not trigger.is_definitive:
            logger.info(
                f"No qualifying subscription for user {truncate_identifier(user_id)} on "
                f"{trigger.value}; keeping {existing.status.value} until Stripe confirms"
            )
            return self._preserve(existing, trigger, customer_id, outcome="preserved")

        now = self._now()
        if confirming is not None and confirming.status == EntitlementStatus.PAST_DUE.value:
            target = EntitlementStatus.PAST_DUE
        else:
            target = EntitlementStatus.CANCELED

        if target == existing.status:
            return self._preserve(existing, trigger, customer_id, outcome="not_entitled")

        updates = {
            "status": target,
            "trial_ends_at": None,
            "canceled_at": (existing.canceled_at or now) if target == EntitlementStatus.CANCELED else None,
        }
        if confirming is not None:
            updates["current_period_start"] = (
                _from_epoch(confirming.current_period_start) or existing.current_period_start
            )
            updates["current_period_end"] = (
                _from_epoch(confirming.current_period_end) or existing.current_period_end
            )
            updates["provider_subscription_id"] = confirming.id

        stored = upsert_entitlement(existing.model_copy(update=updates))

        reconciliations_total.labels(trigger=trigger.value, outcome="downgraded").inc()
        logger.info(
            f"Downgraded user {truncate_identifier(user_id)}: {existing.status.value} -> "
            f"{target.value} via {trigger.value}"
        )

        return ReconcileResult(
            record=stored,
            entitled=False,
            changed=True,
            created=False,
            previous_status=existing.status,
            customer_id=customer_id,
            subscription=confirming,
        )

    @staticmethod
    def _confirming_subscription(
        existing: EntitlementRecord, listing: list[SubscriptionSnapshot]
    ) -> SubscriptionSnapshot | None:
        """
        A listed subscription whose status positively confirms the record lapsed.

        Records that predate provider_subscription_id tracking accept any
        confirmed-inactive subscription of the customer.
        """
        inactive = [sub for sub in listing if sub.status in CONFIRMED_INACTIVE_STATUSES]
        if existing.provider_subscription_id:
            inactive = [sub for sub in inactive if sub.id == existing.provider_subscription_id]
        if not inactive:
            return None
        return max(inactive, key=lambda sub: (sub.created or 0, sub.current_period_end or 0))

    def _preserve(
        self,
        existing: EntitlementRecord,
        trigger: ReconcileTrigger,
        customer_id: str,
        outcome: str,
    ) -> ReconcileResult:
        entitled = existing.is_entitled(self._now())
        if entitled and outcome == "not_entitled":
            outcome = "preserved"
        reconciliations_total.labels(trigger=trigger.value, outcome=outcome).inc()
        return ReconcileResult(
            record=existing,
            entitled=entitled,
            changed=False,
            created=False,
            previous_status=existing.status,
            customer_id=customer_id,
        )

