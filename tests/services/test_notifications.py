"""
Tests for notification dispatch through Resend
"""

from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from smokefree.services.notifications import (
    NotificationDispatcher,
    format_amount,
    premium_confirmation_html,
)


@pytest.fixture
def dispatcher():
    sender = NotificationDispatcher(api_key="re_test_key", from_email="SmokeFree <noreply@smokefree.test>")
    sender.admin_email = None
    return sender


class TestFormatting:
    @pytest.mark.parametrize(
        "amount, currency, expected",
        [
            (990, "usd", "9.90 USD"),
            (1000, "usd", "10 USD"),
            (9900, "krw", "9,900 KRW"),
        ],
    )
    def test_format_amount(self, amount, currency, expected):
        assert format_amount(amount, currency) == expected

    def test_confirmation_mentions_trial_end(self):
        html = premium_confirmation_html("9.90 USD", datetime(2026, 10, 22, tzinfo=UTC))
        assert "2026-10-22" in html
        assert "9.90 USD" in html


class TestNotificationDispatcher:
    def test_confirmation_sent(self, dispatcher):
        with patch("smokefree.services.notifications.resend.Emails.send") as mock_send:
            sent = dispatcher.send_premium_confirmation("quitter@example.com", 990, "usd")

        assert sent is True
        params = mock_send.call_args.args[0]
        assert params["to"] == ["quitter@example.com"]
        assert params["from"] == "SmokeFree <noreply@smokefree.test>"
        assert params["subject"] == "Premium Subscription Activated!"

    def test_admin_copy_sent_when_configured(self, dispatcher):
        dispatcher.admin_email = "ops@smokefree.test"

        with patch("smokefree.services.notifications.resend.Emails.send") as mock_send:
            dispatcher.send_premium_confirmation("quitter@example.com", 990, "usd")

        recipients = [call.args[0]["to"] for call in mock_send.call_args_list]
        assert recipients == [["quitter@example.com"], ["ops@smokefree.test"]]
        assert "quitter@example.com" not in mock_send.call_args_list[1].args[0]["subject"]

    def test_provider_failure_is_swallowed(self, dispatcher):
        with patch(
            "smokefree.services.notifications.resend.Emails.send",
            side_effect=Exception("resend is down"),
        ):
            sent = dispatcher.send_refund_notice("quitter@example.com", 990, "usd")

        assert sent is False

    def test_missing_api_key_skips_send(self):
        dispatcher = NotificationDispatcher(api_key="", from_email="noreply@smokefree.test")
        dispatcher.api_key = None

        with patch("smokefree.services.notifications.resend.Emails.send") as mock_send:
            sent = dispatcher.send_refund_notice("quitter@example.com", 990, "usd")

        assert sent is False
        mock_send.assert_not_called()

    def test_missing_recipient_skips_send(self, dispatcher):
        with patch("smokefree.services.notifications.resend.Emails.send") as mock_send:
            assert dispatcher.send_refund_notice(None, 990, "usd") is False
        mock_send.assert_not_called()
