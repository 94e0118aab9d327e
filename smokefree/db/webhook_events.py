#!/usr/bin/env python3
"""
Webhook Event Ledger
Records Stripe event ids once their handler has succeeded, so redeliveries
can be acknowledged without reprocessing.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from smokefree.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

TABLE = "stripe_webhook_events"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the ledger table is missing from
    the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if TABLE in message or "PGRST205" in message:
        logger.warning(
            f"{TABLE} table is unavailable in Supabase (likely migrations not applied). "
            "Apply supabase/migrations/20251019000000_entitlement_reconciliation.sql, then run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def is_event_processed(event_id: str) -> bool:
    """
    Check if a webhook event has already been processed

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        True if event was already processed. Lookup failures return False:
        every handler is idempotent, so processing twice is safe.
    """
    try:

        def _check_event(client):
            return client.table(TABLE).select("event_id").eq("event_id", event_id).execute()

        result = execute_with_retry(_check_event, max_retries=2, retry_delay=0.2)

        exists = bool(result.data)
        if exists:
            logger.info(f"Duplicate webhook event detected: {event_id}")
        return exists

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error checking if event is processed: {e}", exc_info=True)
        return False


def record_processed_event(
    event_id: str,
    event_type: str,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record that a webhook event has been processed

    Returns:
        True if recorded successfully, False otherwise
    """
    try:

        def _record_event(client):
            return (
                client.table(TABLE)
                .upsert(
                    {
                        "event_id": event_id,
                        "event_type": event_type,
                        "user_id": user_id,
                        "metadata": metadata or {},
                        "processed_at": datetime.now(UTC).isoformat(),
                    },
                    on_conflict="event_id",
                    ignore_duplicates=True,
                )
                .execute()
            )

        execute_with_retry(_record_event, max_retries=2, retry_delay=0.2)
        logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
        return True

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording processed event: {e}", exc_info=True)
        return False


def cleanup_old_events(days: int = 90) -> int:
    """
    Delete ledger rows older than `days`.

    Returns:
        Number of events deleted
    """
    cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

    try:

        def _cleanup_events(client):
            return client.table(TABLE).delete().lt("processed_at", cutoff).execute()

        result = execute_with_retry(_cleanup_events, max_retries=2, retry_delay=0.2)

        count = len(result.data) if result.data else 0
        logger.info(f"Cleaned up {count} old webhook events (older than {days} days)")
        return count

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error cleaning up old events: {e}", exc_info=True)
        return 0
