import copy
import os
import threading
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

# Settings are read once at import time; set them before anything imports smokefree
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-service-role-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_entitlements")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("FRONTEND_URL", "https://app.smokefree.test")

import pytest  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402

from smokefree.schemas.subscriptions import (  # noqa: E402
    CheckoutSessionSnapshot,
    CustomerSnapshot,
    PaymentIntentSnapshot,
    PortalSessionSnapshot,
    PriceSnapshot,
    RefundSnapshot,
    SubscriptionSnapshot,
)
from smokefree.services.notifications import NotificationDispatcher  # noqa: E402
from smokefree.services.override_gate import OverrideGate  # noqa: E402
from smokefree.services.provider_gateway import StripeGateway  # noqa: E402
from smokefree.services.reconciler import Reconciler  # noqa: E402
from smokefree.services.refund_policy import RefundPolicy  # noqa: E402
from smokefree.services.subscriptions import SubscriptionService  # noqa: E402
from smokefree.utils.exceptions import ProviderRejected, ValidationError  # noqa: E402

USER_ID = "5b0e3f7a-9c1d-4e2b-8a6f-0d4c3b2a1e90"
USER_EMAIL = "quitter@example.com"
CUSTOMER_ID = "cus_test_quitter"


# ============================================================
# In-memory Supabase
# ============================================================

UNIQUE_KEYS = {
    "subscriptions": "user_id",
    "payments": "transaction_id",
    "stripe_webhook_events": "event_id",
}


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


class _Query:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self._filters = []
        self._limit = None
        self._order = None
        self._action = "select"
        self._payload = None
        self._on_conflict = None
        self._ignore_duplicates = False

    # --- builders ---
    def select(self, *cols, count=None):
        self._action = "select"
        return self

    def insert(self, payload):
        self._action = "insert"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict=None, ignore_duplicates=False):
        self._action = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, payload):
        self._action = "update"
        self._payload = payload
        return self

    def delete(self):
        self._action = "delete"
        return self

    # --- filters ---
    def eq(self, field, value):
        self._filters.append(("eq", field, value))
        return self

    def in_(self, field, values):
        self._filters.append(("in", field, list(values)))
        return self

    def lt(self, field, value):
        self._filters.append(("lt", field, value))
        return self

    def gt(self, field, value):
        self._filters.append(("gt", field, value))
        return self

    def order(self, field, desc=False):
        self._order = (field, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _match(self, row):
        for op, field, value in self._filters:
            current = row.get(field)
            if op == "eq" and current != value:
                return False
            if op == "in" and current not in value:
                return False
            if op == "lt" and (current is None or _as_datetime(current) >= _as_datetime(value)):
                return False
            if op == "gt" and (current is None or current <= value):
                return False
        return True

    def execute(self):
        with self.db.lock:
            self.db.calls.append((self.table, self._action))
            rows = self.db.tables.setdefault(self.table, [])

            if self._action == "select":
                matched = [copy.deepcopy(r) for r in rows if self._match(r)]
                if self._order is not None:
                    field, desc = self._order
                    matched.sort(key=lambda r: r.get(field) or "", reverse=desc)
                if self._limit is not None:
                    matched = matched[: self._limit]
                return _Result(matched)

            if self._action == "insert":
                return _Result([self._insert(rows, dict(self._payload))])

            if self._action == "upsert":
                payload = dict(self._payload)
                key = self._on_conflict or UNIQUE_KEYS.get(self.table)
                existing = next((r for r in rows if key and r.get(key) == payload.get(key)), None)
                if existing is None:
                    return _Result([self._insert(rows, payload)])
                if self._ignore_duplicates:
                    return _Result([])
                existing.update(payload)
                return _Result([copy.deepcopy(existing)])

            if self._action == "update":
                updated = []
                for row in rows:
                    if self._match(row):
                        row.update(self._payload)
                        updated.append(copy.deepcopy(row))
                return _Result(updated)

            if self._action == "delete":
                deleted = [r for r in rows if self._match(r)]
                self.db.tables[self.table] = [r for r in rows if not self._match(r)]
                return _Result(deleted)

        raise AssertionError(f"unsupported action {self._action}")

    def _insert(self, rows, payload):
        key = UNIQUE_KEYS.get(self.table)
        if key and payload.get(key) is not None and any(r.get(key) == payload[key] for r in rows):
            raise APIError(
                {"message": "duplicate key value violates unique constraint", "code": "23505"}
            )
        payload.setdefault("id", f"{self.table}-{len(rows) + 1}")
        payload.setdefault("created_at", datetime.now(UTC).isoformat())
        rows.append(payload)
        return copy.deepcopy(payload)


def _as_datetime(value):
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class FakeSupabase:
    """Mimics the supabase-py builder chain against in-memory tables."""

    def __init__(self):
        self.tables = {name: [] for name in UNIQUE_KEYS}
        self.calls = []
        self.lock = threading.RLock()
        self.auth = MagicMock()
        self.auth.admin.get_user_by_id.return_value = SimpleNamespace(
            user=SimpleNamespace(id=USER_ID, email=USER_EMAIL)
        )
        self.auth.admin.list_users.return_value = []

    def table(self, name):
        return _Query(self, name)

    def rows(self, name):
        return self.tables[name]


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    with (
        patch("smokefree.config.supabase_config.get_supabase_client", return_value=db),
        patch("smokefree.db.users.get_supabase_client", return_value=db),
    ):
        yield db


# ============================================================
# In-memory Stripe
# ============================================================


class FakeGateway(StripeGateway):
    """StripeGateway backed by dictionaries; snapshot converters are the real ones."""

    def __init__(self):
        self.api_key = "sk_test_fake"
        self.webhook_secret = "whsec_test"
        self.customers: dict[str, CustomerSnapshot] = {}
        self.subscriptions: dict[str, list[SubscriptionSnapshot]] = {}
        self.payment_intents: dict[str, list[PaymentIntentSnapshot]] = {}
        self.sessions: dict[str, CheckoutSessionSnapshot] = {}
        self.open_sessions: dict[str, list[CheckoutSessionSnapshot]] = {}
        self.prices: dict[str, PriceSnapshot] = {}
        self.invoice_payment_intents: dict[str, str] = {}

        self.created_customers: list[str] = []
        self.created_sessions: list[dict] = []
        self.portal_sessions: list[dict] = []
        self.canceled: list[str] = []
        self.refunds: list[str] = []

        self.list_error = None
        self.refund_error = None
        self.cancel_error = None
        self.cancel_failures: dict[str, Exception] = {}

    # --- setup helpers ---
    def add_customer(self, email=USER_EMAIL, customer_id=CUSTOMER_ID, metadata=None):
        customer = CustomerSnapshot(id=customer_id, email=email, metadata=metadata or {})
        self.customers[email] = customer
        return customer

    def add_subscription(self, subscription: SubscriptionSnapshot):
        self.subscriptions.setdefault(subscription.customer_id, []).append(subscription)
        return subscription

    def add_payment(self, customer_id, payment: PaymentIntentSnapshot):
        self.payment_intents.setdefault(customer_id, []).insert(0, payment)
        return payment

    # --- read side ---
    def fetch_customer_by_email(self, email):
        return self.customers.get(email)

    def retrieve_customer(self, customer_id):
        return next((c for c in self.customers.values() if c.id == customer_id), None)

    def list_subscriptions(self, customer_id, status="all", limit=10):
        if self.list_error is not None:
            raise self.list_error
        subs = [s.model_copy() for s in self.subscriptions.get(customer_id, [])]
        if status is None:
            subs = [s for s in subs if s.status != "canceled"]
        return subs[:limit]

    def list_recent_payment_intents(self, customer_id, limit=5):
        return list(self.payment_intents.get(customer_id, []))[:limit]

    def retrieve_subscription(self, subscription_id):
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub.id == subscription_id:
                    return sub.model_copy()
        raise ProviderRejected()

    def retrieve_checkout_session(self, session_id, expand=None):
        if session_id not in self.sessions:
            raise ProviderRejected("Invalid checkout session")
        return self.sessions[session_id].model_copy()

    def list_checkout_sessions(self, customer_id, limit=3, status=None):
        sessions = self.open_sessions.get(customer_id, [])
        if status:
            sessions = [s for s in sessions if s.status == status]
        return sessions[:limit]

    def retrieve_invoice_payment_intent(self, invoice_id):
        return self.invoice_payment_intents.get(invoice_id)

    def retrieve_price(self, price_id):
        if price_id not in self.prices:
            raise ProviderRejected()
        return self.prices[price_id]

    # --- write side ---
    def create_customer(self, email, user_id):
        customer_id = f"cus_new_{len(self.created_customers) + 1}"
        self.created_customers.append(customer_id)
        return self.add_customer(email, customer_id, {"supabase_user_id": user_id})

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, user_id=None):
        session_id = f"cs_test_new_{len(self.created_sessions) + 1}"
        self.created_sessions.append(
            {
                "customer_id": customer_id,
                "price_id": price_id,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "user_id": user_id,
            }
        )
        return CheckoutSessionSnapshot(
            id=session_id,
            mode="subscription",
            status="open",
            payment_status="unpaid",
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
            customer_id=customer_id,
            price_id=price_id,
        )

    def create_portal_session(self, customer_id, return_url):
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url})
        return PortalSessionSnapshot(id="bps_test_1", url="https://billing.stripe.com/p/session/test")

    def cancel_subscription(self, subscription_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        if subscription_id in self.cancel_failures:
            raise self.cancel_failures[subscription_id]
        self.canceled.append(subscription_id)
        for subs in self.subscriptions.values():
            for sub in subs:
                if sub.id == subscription_id:
                    sub.status = "canceled"

    def issue_refund(self, payment_intent_id, reason="requested_by_customer"):
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append(payment_intent_id)
        return RefundSnapshot(id=f"re_test_{len(self.refunds)}", status="succeeded")

    def construct_event(self, payload, signature):
        if signature != "valid-signature":
            raise ValidationError("Webhook signature verification failed")
        return payload


@pytest.fixture
def now():
    return datetime.now(UTC).replace(microsecond=0)


@pytest.fixture
def epoch(now):
    """Epoch seconds relative to the frozen `now`."""

    def _epoch(**delta):
        return int((now + timedelta(**delta)).timestamp())

    return _epoch


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return MagicMock(spec=NotificationDispatcher)


@pytest.fixture
def reconciler(gateway, now):
    return Reconciler(gateway, now=lambda: now)


@pytest.fixture
def refund_policy(gateway, notifier, now):
    return RefundPolicy(gateway, notifier, now=lambda: now, window_hours=72)


@pytest.fixture
def subscription_service(gateway, reconciler, refund_policy, notifier):
    return SubscriptionService(
        gateway=gateway,
        reconciler=reconciler,
        refund_policy=refund_policy,
        notifier=notifier,
        override_gate=OverrideGate(unlock_code="QUIT-TODAY"),
    )


@pytest.fixture
def user():
    return {"id": USER_ID, "email": USER_EMAIL}


@pytest.fixture
def make_subscription(epoch):
    def _make(sub_id="sub_test_1", status="active", customer_id=CUSTOMER_ID, **overrides):
        fields = {
            "id": sub_id,
            "status": status,
            "customer_id": customer_id,
            "created": epoch(days=-1),
            "current_period_start": epoch(days=-1),
            "current_period_end": epoch(days=29),
            "trial_end": None,
            "price_id": "price_premium_monthly",
            "product_id": "prod_premium",
            "unit_amount": 990,
            "currency": "usd",
            "metadata": {"supabase_user_id": USER_ID},
        }
        fields.update(overrides)
        return SubscriptionSnapshot(**fields)

    return _make


@pytest.fixture
def stored_entitlement(fake_db, now):
    """Seed the subscriptions table with one row for USER_ID."""

    def _seed(status="active", provider_subscription_id="sub_test_1", **overrides):
        row = {
            "user_id": USER_ID,
            "plan_id": "c27dbaea-7a36-4f09-bb9d-2563cdcfc079",
            "status": status,
            "current_period_start": (now - timedelta(days=10)).isoformat(),
            "current_period_end": (now + timedelta(days=20)).isoformat(),
            "trial_ends_at": None,
            "canceled_at": None,
            "payment_provider": "stripe",
            "provider_subscription_id": provider_subscription_id,
            "updated_at": (now - timedelta(days=10)).isoformat(),
        }
        row.update(overrides)
        fake_db.tables["subscriptions"].append(row)
        return row

    return _seed
