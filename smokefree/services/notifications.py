"""
Notification Dispatch

Transactional emails sent after entitlement transitions. Every send is
best-effort: failures are logged and counted, never raised, so an email outage
cannot roll back the write that triggered it.
"""

import logging
from datetime import UTC, datetime

import resend

from smokefree.config import Config
from smokefree.db.payments import minor_to_major
from smokefree.services.prometheus_metrics import notifications_total
from smokefree.utils.security_validators import mask_email

logger = logging.getLogger(__name__)

_WRAPPER = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  {body}
  <p>Best regards,<br>The SmokeFree Team</p>
</div>
"""

_INFO_BOX = (
    '<div style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0;">'
    "{rows}</div>"
)


def format_amount(amount: int | None, currency: str | None) -> str:
    currency = (currency or "").upper()
    value = minor_to_major(amount, currency)
    if value == int(value):
        return f"{int(value):,} {currency}".strip()
    return f"{value:,.2f} {currency}".strip()


def premium_confirmation_html(amount: str | None, trial_end: datetime | None) -> str:
    rows = []
    if amount:
        rows.append(f"<p><strong>Amount:</strong> {amount}</p>")
    if trial_end:
        rows.append(f"<p><strong>Free trial until:</strong> {trial_end.strftime('%Y-%m-%d')}</p>")
    body = (
        '<h1 style="color: #2563eb;">Welcome to Premium!</h1>'
        "<p>Your Premium subscription has been successfully activated.</p>"
        + (_INFO_BOX.format(rows="".join(rows)) if rows else "")
        + "<p>Thank you for choosing Premium. Every smoke-free day counts!</p>"
    )
    return _WRAPPER.format(body=body)


def refund_notice_html(amount: str) -> str:
    rows = (
        f"<p><strong>Amount:</strong> {amount}</p>"
        "<p><strong>Processing time:</strong> 3-7 business days</p>"
        '<p style="font-size: 13px; color: #6b7280;">The money is returned to the payment '
        "method you used for the subscription.</p>"
    )
    body = (
        '<h1 style="color: #2563eb;">Your refund is on its way</h1>'
        "<p>Your Premium subscription was canceled and we have refunded your most recent payment.</p>"
        + _INFO_BOX.format(rows=rows)
    )
    return _WRAPPER.format(body=body)


class NotificationDispatcher:
    """Sends entitlement emails through Resend"""

    def __init__(self, api_key: str | None = None, from_email: str | None = None):
        self.api_key = api_key or Config.RESEND_API_KEY
        self.from_email = from_email or Config.FROM_EMAIL
        self.admin_email = Config.ADMIN_EMAIL

        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured - notification emails are disabled")

    def _send(self, kind: str, to: str | None, subject: str, html: str) -> bool:
        if not to:
            logger.info(f"Skipping {kind} email: no recipient")
            notifications_total.labels(kind=kind, result="skipped").inc()
            return False
        if not self.api_key:
            notifications_total.labels(kind=kind, result="skipped").inc()
            return False

        try:
            resend.api_key = self.api_key
            resend.Emails.send(
                {
                    "from": self.from_email,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                }
            )
        except Exception as e:
            logger.error(f"Failed to send {kind} email to {mask_email(to)}: {e}")
            notifications_total.labels(kind=kind, result="failed").inc()
            return False

        logger.info(f"Sent {kind} email to {mask_email(to)}")
        notifications_total.labels(kind=kind, result="sent").inc()
        return True

    def send_premium_confirmation(
        self,
        email: str | None,
        amount: int | None = None,
        currency: str | None = None,
        trial_end: datetime | None = None,
    ) -> bool:
        amount_text = format_amount(amount, currency) if amount else None
        sent = self._send(
            "premium_confirmation",
            email,
            "Premium Subscription Activated!",
            premium_confirmation_html(amount_text, trial_end),
        )

        if self.admin_email:
            self._send(
                "admin_new_subscription",
                self.admin_email,
                f"[New Subscription] {mask_email(email)}",
                _WRAPPER.format(
                    body=_INFO_BOX.format(
                        rows=(
                            f"<p><strong>User:</strong> {mask_email(email)}</p>"
                            f"<p><strong>Amount:</strong> {amount_text or 'n/a'}</p>"
                            f"<p><strong>Date:</strong> {datetime.now(UTC):%Y-%m-%d %H:%M} UTC</p>"
                        )
                    )
                ),
            )
        return sent

    def send_refund_notice(self, email: str | None, amount: int | None, currency: str | None) -> bool:
        return self._send(
            "refund_notice",
            email,
            "Refund processed - Premium subscription",
            refund_notice_html(format_amount(amount, currency)),
        )
