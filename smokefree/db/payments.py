#!/usr/bin/env python3
"""
Payment Records
Append-only log of completed charges, de-duplicated on transaction_id.
"""

import logging
from typing import Any

from postgrest.exceptions import APIError

from smokefree.config.supabase_config import execute_with_retry
from smokefree.schemas.subscriptions import PaymentRecord
from smokefree.utils.exceptions import InternalError
from smokefree.utils.security_validators import truncate_identifier

logger = logging.getLogger(__name__)

TABLE = "payments"
UNIQUE_VIOLATION = "23505"

# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


def minor_to_major(amount: int | None, currency: str | None) -> float:
    """Convert a Stripe amount in the currency's smallest unit into a display amount."""
    if not amount:
        return 0.0
    if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return amount / 100


def get_payment_by_transaction_id(transaction_id: str) -> dict[str, Any] | None:
    try:

        def _load(client):
            return (
                client.table(TABLE)
                .select("*")
                .eq("transaction_id", transaction_id)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_load, operation_name="get_payment_by_transaction_id")
    except Exception as e:
        logger.error(f"Error loading payment record: {e}", exc_info=True)
        raise InternalError() from e

    return result.data[0] if result.data else None


def record_payment(payment: PaymentRecord) -> bool:
    """
    Insert a payment unless one with the same transaction_id already exists.

    A concurrent insert that loses the race surfaces as a unique violation and
    is treated the same as "already recorded".

    Returns:
        True if a new row was inserted, False if it already existed

    Raises:
        InternalError: On any other storage failure
    """
    if get_payment_by_transaction_id(payment.transaction_id):
        logger.info(
            f"Payment {truncate_identifier(payment.transaction_id)} already recorded, skipping insert"
        )
        return False

    row = payment.model_dump(mode="json", exclude={"created_at"})

    try:

        def _insert(client):
            return client.table(TABLE).insert(row).execute()

        execute_with_retry(_insert, operation_name="record_payment")
    except APIError as e:
        if getattr(e, "code", None) == UNIQUE_VIOLATION:
            logger.info(
                f"Payment {truncate_identifier(payment.transaction_id)} recorded concurrently, skipping"
            )
            return False
        logger.error(f"Error recording payment: {e}", exc_info=True)
        raise InternalError() from e
    except Exception as e:
        logger.error(f"Error recording payment: {e}", exc_info=True)
        raise InternalError() from e

    logger.info(
        f"Payment recorded for user {truncate_identifier(payment.user_id)} "
        f"({truncate_identifier(payment.transaction_id)})"
    )
    return True


def update_payment_status(transaction_id: str, status: str) -> bool:
    """
    Update the status of a payment record. Status is the only mutable column.

    Returns:
        True if a row was updated
    """
    try:

        def _update(client):
            return (
                client.table(TABLE)
                .update({"status": status})
                .eq("transaction_id", transaction_id)
                .execute()
            )

        result = execute_with_retry(_update, operation_name="update_payment_status")
    except Exception as e:
        logger.error(f"Error updating payment status: {e}", exc_info=True)
        raise InternalError() from e

    return bool(result.data)
