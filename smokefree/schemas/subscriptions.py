"""Pydantic schemas for entitlement records, provider snapshots and the subscription endpoints"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntitlementStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PENDING = "pending"


ENTITLED_STATUSES = frozenset({EntitlementStatus.ACTIVE, EntitlementStatus.TRIALING})

# Provider statuses that positively confirm a subscription is no longer usable
CONFIRMED_INACTIVE_STATUSES = frozenset(
    {"canceled", "past_due", "unpaid", "incomplete_expired"}
)


class ReconcileTrigger(str, Enum):
    """What caused a reconciliation run"""

    POLL = "poll"
    ACTIVATION = "activation"
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE = "invoice"
    SWEEP = "sweep"

    @property
    def is_definitive(self) -> bool:
        """Triggers that carry a positive provider statement about the subscription."""
        return self in {
            ReconcileTrigger.SUBSCRIPTION_UPDATED,
            ReconcileTrigger.SUBSCRIPTION_DELETED,
        }


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class EntitlementRecord(BaseModel):
    """One row of the `subscriptions` table"""

    user_id: str
    plan_id: str | None = None
    status: EntitlementStatus
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    canceled_at: datetime | None = None
    payment_provider: str = "stripe"
    provider_subscription_id: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EntitlementRecord":
        return cls(
            user_id=str(row["user_id"]),
            plan_id=row.get("plan_id"),
            status=EntitlementStatus(row.get("status") or EntitlementStatus.PENDING.value),
            current_period_start=_parse_timestamp(row.get("current_period_start")),
            current_period_end=_parse_timestamp(row.get("current_period_end")),
            trial_ends_at=_parse_timestamp(row.get("trial_ends_at")),
            canceled_at=_parse_timestamp(row.get("canceled_at")),
            payment_provider=row.get("payment_provider") or "stripe",
            provider_subscription_id=row.get("provider_subscription_id"),
            updated_at=_parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json")
        row["status"] = self.status.value
        return row

    def is_entitled(self, now: datetime | None = None) -> bool:
        """Active or trialing, with a period end that has not elapsed."""
        if self.status not in ENTITLED_STATUSES:
            return False
        if self.current_period_end is None:
            return True
        return self.current_period_end > (now or datetime.now(UTC))


class PaymentRecord(BaseModel):
    """One row of the append-only `payments` table"""

    user_id: str
    amount: float
    currency: str
    status: str = "completed"
    transaction_id: str
    payment_method: str = "stripe"
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ==================== Provider snapshots ====================


class CustomerSnapshot(BaseModel):
    id: str
    email: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionSnapshot(BaseModel):
    """Provider subscription state, read fresh for every reconciliation. Times are epoch seconds."""

    id: str
    status: str
    customer_id: str | None = None
    created: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    trial_end: int | None = None
    price_id: str | None = None
    product_id: str | None = None
    unit_amount: int | None = None
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def qualifies(self) -> bool:
        return self.status in {s.value for s in ENTITLED_STATUSES}


class PaymentIntentSnapshot(BaseModel):
    id: str
    status: str
    amount: int = 0
    currency: str | None = None
    created: int | None = None
    customer_id: str | None = None


class PriceSnapshot(BaseModel):
    id: str
    type: str | None = None
    active: bool = True
    product_id: str | None = None
    unit_amount: int | None = None
    currency: str | None = None

    @property
    def is_recurring(self) -> bool:
        return self.type == "recurring"


class CheckoutSessionSnapshot(BaseModel):
    id: str
    mode: str | None = None
    status: str | None = None
    payment_status: str | None = None
    url: str | None = None
    created: int | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    client_reference_id: str | None = None
    subscription_id: str | None = None
    subscription: SubscriptionSnapshot | None = None
    payment_intent_id: str | None = None
    invoice_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    price_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundSnapshot(BaseModel):
    id: str
    status: str | None = None
    amount: int | None = None
    currency: str | None = None


class PortalSessionSnapshot(BaseModel):
    id: str
    url: str


# ==================== Reconciliation and refunds ====================


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation; `record` is None for the not-entitled sentinel."""

    record: EntitlementRecord | None = None
    entitled: bool = False
    changed: bool = False
    created: bool = False
    previous_status: EntitlementStatus | None = None
    customer_id: str | None = None
    subscription: SubscriptionSnapshot | None = None

    @classmethod
    def not_entitled(cls, record: EntitlementRecord | None = None) -> "ReconcileResult":
        return cls(record=record, entitled=False, changed=False)


class CancellationContext(BaseModel):
    """Facts about a cancellation that the refund policy needs"""

    user_id: str
    customer_id: str | None = None
    email: str | None = None
    subscription_id: str | None = None
    # Status the subscription had immediately before cancellation, when known
    previous_status: str | None = None
    trial_end: int | None = None
    source: str = "user"


class RefundDecision(BaseModel):
    eligible: bool = False
    refunded: bool = False
    reason: str
    payment_intent_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    refund_id: str | None = None
    error: str | None = None


# ==================== Endpoint models ====================


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ActivateSubscriptionRequest(_CamelRequest):
    session_id: str | None = Field(default=None, alias="sessionId")


class ActivateSubscriptionResponse(BaseModel):
    success: bool = True
    subscribed: bool
    status: str | None = None
    trial_end: datetime | None = None
    current_period_end: datetime | None = None


class CheckSubscriptionResponse(BaseModel):
    subscribed: bool
    plan_name: str | None = None
    subscription_end: datetime | None = None
    status: str | None = None
    premium: bool = False
    poll_interval_seconds: int = 60


class CreateCheckoutRequest(_CamelRequest):
    price_id: str | None = Field(default=None, alias="priceId")


class CheckoutResponse(BaseModel):
    url: str
    session_id: str | None = None
    reused: bool = False


class PortalResponse(BaseModel):
    url: str


class CancelSubscriptionResponse(BaseModel):
    success: bool
    refunded: bool = False
    message: str
    refund_error: str | None = None


class UnlockCodeRequest(BaseModel):
    code: str | None = None


class UnlockCodeResponse(BaseModel):
    valid: bool


class WebhookProcessingResult(BaseModel):
    success: bool
    event_type: str | None = None
    event_id: str | None = None
    message: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
