"""
Prometheus metrics for the entitlement service.

Exposed on GET /metrics:
- Reconciliation outcomes by trigger
- Refund decisions
- Webhook deliveries by event type and result
- Stripe errors by operation and classification
- Notification delivery
"""

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ==================== Reconciliation ====================
reconciliations_total = Counter(
    "entitlement_reconciliations_total",
    "Entitlement reconciliations by trigger and outcome",
    ["trigger", "outcome"],
)

reconciliation_duration = Histogram(
    "entitlement_reconciliation_duration_seconds",
    "Wall time of one reconciliation, including Stripe reads",
    ["trigger"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

# ==================== Refunds ====================
refund_decisions_total = Counter(
    "entitlement_refund_decisions_total",
    "Refund policy decisions by outcome",
    ["outcome"],
)

# ==================== Webhooks ====================
webhook_events_total = Counter(
    "stripe_webhook_events_total",
    "Stripe webhook deliveries by event type and result",
    ["event_type", "result"],
)

# ==================== Provider ====================
provider_errors_total = Counter(
    "stripe_provider_errors_total",
    "Stripe API failures by operation and classification",
    ["operation", "kind"],
)

# ==================== Notifications ====================
notifications_total = Counter(
    "entitlement_notifications_total",
    "Notification emails by kind and result",
    ["kind", "result"],
)
