"""
Tests for payment records and the webhook event ledger
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from postgrest.exceptions import APIError

from conftest import USER_ID
from smokefree.db.payments import (
    get_payment_by_transaction_id,
    minor_to_major,
    record_payment,
    update_payment_status,
)
from smokefree.db.webhook_events import cleanup_old_events, is_event_processed, record_processed_event
from smokefree.schemas.subscriptions import PaymentRecord
from smokefree.utils.exceptions import InternalError


def _payment(transaction_id="in_test_1"):
    return PaymentRecord(
        user_id=USER_ID,
        amount=9.9,
        currency="USD",
        status="completed",
        transaction_id=transaction_id,
        metadata={"subscription_id": "sub_test_1"},
    )


class TestRecordPayment:
    def test_first_insert_wins(self, fake_db):
        assert record_payment(_payment()) is True
        assert record_payment(_payment()) is False
        assert len(fake_db.rows("payments")) == 1

    def test_concurrent_inserts_record_once(self, fake_db):
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: record_payment(_payment()), range(6)))

        assert results.count(True) == 1
        assert len(fake_db.rows("payments")) == 1

    def test_unique_violation_is_already_recorded(self):
        client = MagicMock()
        query = client.table.return_value
        query.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(data=[])
        query.insert.return_value.execute.side_effect = APIError(
            {"message": "duplicate key value violates unique constraint", "code": "23505"}
        )

        with patch("smokefree.config.supabase_config.get_supabase_client", return_value=client):
            assert record_payment(_payment()) is False

    def test_other_api_error_raises(self):
        client = MagicMock()
        query = client.table.return_value
        query.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(data=[])
        query.insert.return_value.execute.side_effect = APIError({"message": "permission denied", "code": "42501"})

        with patch("smokefree.config.supabase_config.get_supabase_client", return_value=client):
            with pytest.raises(InternalError):
                record_payment(_payment())

    def test_status_update(self, fake_db):
        record_payment(_payment("pi_test_1"))

        assert update_payment_status("pi_test_1", "refunded") is True
        assert get_payment_by_transaction_id("pi_test_1")["status"] == "refunded"
        assert update_payment_status("pi_unknown", "refunded") is False


class TestMinorToMajor:
    @pytest.mark.parametrize(
        "amount, currency, expected",
        [(990, "usd", 9.9), (9900, "KRW", 9900.0), (None, "usd", 0.0), (0, "jpy", 0.0)],
    )
    def test_conversion(self, amount, currency, expected):
        assert minor_to_major(amount, currency) == pytest.approx(expected)


class TestWebhookLedger:
    def test_record_and_detect(self, fake_db):
        assert is_event_processed("evt_1") is False

        assert record_processed_event("evt_1", "invoice.paid", user_id=USER_ID) is True

        assert is_event_processed("evt_1") is True
        assert fake_db.rows("stripe_webhook_events")[0]["user_id"] == USER_ID

    def test_recording_twice_keeps_one_row(self, fake_db):
        record_processed_event("evt_1", "invoice.paid")
        record_processed_event("evt_1", "invoice.paid")

        assert len(fake_db.rows("stripe_webhook_events")) == 1

    def test_lookup_failure_is_not_a_duplicate(self):
        with patch(
            "smokefree.config.supabase_config.get_supabase_client",
            side_effect=Exception("relation stripe_webhook_events does not exist"),
        ):
            assert is_event_processed("evt_1") is False

    def test_cleanup_removes_old_events(self, fake_db):
        old = (datetime.now(UTC) - timedelta(days=120)).isoformat()
        recent = datetime.now(UTC).isoformat()
        fake_db.tables["stripe_webhook_events"].extend(
            [
                {"event_id": "evt_old", "processed_at": old},
                {"event_id": "evt_new", "processed_at": recent},
            ]
        )

        assert cleanup_old_events(90) == 1
        assert [row["event_id"] for row in fake_db.rows("stripe_webhook_events")] == ["evt_new"]
