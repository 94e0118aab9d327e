#!/usr/bin/env python3
"""
Entitlement Store
One `subscriptions` row per user, written only through upserts keyed on user_id
so concurrent reconciliations converge instead of duplicating.
"""

import logging
from datetime import UTC, datetime

from smokefree.config.supabase_config import execute_with_retry
from smokefree.schemas.subscriptions import EntitlementRecord, EntitlementStatus
from smokefree.utils.exceptions import InternalError
from smokefree.utils.security_validators import truncate_identifier

logger = logging.getLogger(__name__)

TABLE = "subscriptions"


def get_entitlement(user_id: str) -> EntitlementRecord | None:
    """
    Load the entitlement record for a user.

    Raises:
        InternalError: If the storage read fails
    """
    try:

        def _load(client):
            return client.table(TABLE).select("*").eq("user_id", user_id).limit(1).execute()

        result = execute_with_retry(_load, operation_name="get_entitlement")
    except Exception as e:
        logger.error(
            f"Error loading entitlement for user {truncate_identifier(user_id)}: {e}",
            exc_info=True,
        )
        raise InternalError() from e

    if not result.data:
        return None
    return EntitlementRecord.from_row(result.data[0])


def find_user_id_by_subscription(provider_subscription_id: str) -> str | None:
    """Reverse lookup used by webhooks whose payload carries no user metadata."""
    try:

        def _lookup(client):
            return (
                client.table(TABLE)
                .select("user_id")
                .eq("provider_subscription_id", provider_subscription_id)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_lookup, operation_name="find_user_id_by_subscription")
    except Exception as e:
        logger.error(f"Error looking up subscription owner: {e}", exc_info=True)
        raise InternalError() from e

    if result.data:
        return str(result.data[0]["user_id"])
    return None


def upsert_entitlement(record: EntitlementRecord) -> EntitlementRecord:
    """
    Insert or update the record for `record.user_id` in a single statement.

    Raises:
        InternalError: If the storage write fails
    """
    row = record.to_row()
    row["updated_at"] = datetime.now(UTC).isoformat()

    try:

        def _upsert(client):
            return client.table(TABLE).upsert(row, on_conflict="user_id").execute()

        result = execute_with_retry(_upsert, operation_name="upsert_entitlement")
    except Exception as e:
        logger.error(
            f"Error upserting entitlement for user {truncate_identifier(record.user_id)}: {e}",
            exc_info=True,
        )
        raise InternalError() from e

    stored = EntitlementRecord.from_row(result.data[0]) if result.data else None
    if stored is None:
        stored = EntitlementRecord.from_row(row)

    logger.info(
        f"Entitlement upserted: user {truncate_identifier(record.user_id)} -> {stored.status.value}"
    )
    return stored


def insert_pending_if_absent(user_id: str, plan_id: str | None) -> bool:
    """
    Create a `pending` record for a user who has none yet.

    Uses ON CONFLICT DO NOTHING so an existing record of any status is never
    overwritten by a checkout that has not been paid.

    Returns:
        True if a row was inserted
    """
    now = datetime.now(UTC).isoformat()
    row = {
        "user_id": user_id,
        "plan_id": plan_id,
        "status": EntitlementStatus.PENDING.value,
        "payment_provider": "stripe",
        "updated_at": now,
    }

    try:

        def _insert(client):
            return (
                client.table(TABLE)
                .upsert(row, on_conflict="user_id", ignore_duplicates=True)
                .execute()
            )

        result = execute_with_retry(_insert, operation_name="insert_pending_entitlement")
    except Exception as e:
        logger.error(f"Error inserting pending entitlement: {e}", exc_info=True)
        raise InternalError() from e

    return bool(result.data)


def mark_canceled(user_id: str, canceled_at: datetime | None = None) -> EntitlementRecord | None:
    """
    Soft-deactivate a user's record. Period bounds are left untouched so the
    caller can still honour access until `current_period_end`.

    Returns:
        The updated record, or None if the user has no record
    """
    canceled_at = canceled_at or datetime.now(UTC)
    patch = {
        "status": EntitlementStatus.CANCELED.value,
        "canceled_at": canceled_at.isoformat(),
        "updated_at": datetime.now(UTC).isoformat(),
    }

    try:

        def _update(client):
            return client.table(TABLE).update(patch).eq("user_id", user_id).execute()

        result = execute_with_retry(_update, operation_name="mark_entitlement_canceled")
    except Exception as e:
        logger.error(
            f"Error canceling entitlement for user {truncate_identifier(user_id)}: {e}",
            exc_info=True,
        )
        raise InternalError() from e

    if not result.data:
        logger.info(f"No entitlement to cancel for user {truncate_identifier(user_id)}")
        return None

    logger.info(f"Entitlement canceled for user {truncate_identifier(user_id)}")
    return EntitlementRecord.from_row(result.data[0])


def list_lapsed_entitlements(
    now: datetime | None = None, limit: int = 200, after_user_id: str | None = None
) -> list[EntitlementRecord]:
    """
    Stripe-backed records still marked entitled (or past due) whose period has ended.

    Pages are ordered by user_id; pass the last user_id of a page as
    `after_user_id` to fetch the next one.
    """
    now = now or datetime.now(UTC)
    statuses = [
        EntitlementStatus.ACTIVE.value,
        EntitlementStatus.TRIALING.value,
        EntitlementStatus.PAST_DUE.value,
    ]

    try:

        def _list(client):
            query = (
                client.table(TABLE)
                .select("*")
                .eq("payment_provider", "stripe")
                .in_("status", statuses)
                .lt("current_period_end", now.isoformat())
            )
            if after_user_id:
                query = query.gt("user_id", after_user_id)
            return query.order("user_id").limit(limit).execute()

        result = execute_with_retry(_list, operation_name="list_lapsed_entitlements")
    except Exception as e:
        logger.error(f"Error listing lapsed entitlements: {e}", exc_info=True)
        raise InternalError() from e

    return [EntitlementRecord.from_row(row) for row in result.data or []]
