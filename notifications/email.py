"""
Credit activity emails sent through the Brevo transactional API.

Delivery is fire-and-forget: a failed send is logged and recorded in the
notification log, and never reaches the caller.
"""

import html
from datetime import datetime
from typing import Optional

import httpx
import structlog

from ledger.storage import EMAIL_LOG, Storage

logger = structlog.get_logger().bind(component="email")

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"


def reason_label(reason: Optional[str]) -> str:
    r = (reason or "").lower()
    if "refund" in r:
        return "Refund Processed"
    if "purchase" in r or "pass" in r or "payment" in r or "checkout" in r or "upgrade" in r:
        return "Payment Successful"
    if "gain" in r or "earn" in r or "reward" in r or "bonus" in r or "referral" in r:
        return "Credits Added"
    return "Credits Updated"


def build_credit_update_email(
    reason: str,
    delta: int,
    new_balance: int,
    occurred_at: datetime,
    support_email: str,
    user_name: str = "there",
    amount_usd=None,
    origin_site: Optional[str] = None,
) -> tuple[str, str]:
    label = reason_label(reason)
    subject = f"Crowbar Credit Update: {label}"
    delta_text = f"+{delta}" if delta > 0 else str(delta)
    items = [
        ("Activity", label),
        ("Credits Change", delta_text),
        ("Current Balance", str(new_balance)),
        ("Date", occurred_at.isoformat()),
    ]
    if amount_usd is not None:
        items.append(("Amount (USD)", str(amount_usd)))
    if origin_site:
        items.append(("Origin Site", origin_site))
    rows = "".join(
        f"<li><strong>{html.escape(k)}:</strong> {html.escape(v)}</li>" for k, v in items
    )
    body = (
        f"<p>Dear {html.escape(user_name)},</p>"
        "<p>Your Crowbar credits have been updated.</p>"
        f"<ul>{rows}</ul>"
        f'<p>If you have questions, contact us at <a href="mailto:{html.escape(support_email)}">'
        f"{html.escape(support_email)}</a>.</p>"
        "<p>Crowbar Team</p>"
    )
    return subject, body


class BrevoMailer:
    def __init__(self, api_key: str, sender_email: str, sender_name: str, timeout: float = 15.0,
                 client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.client = client or httpx.Client(timeout=timeout)

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, html_content: str) -> Optional[str]:
        response = self.client.post(
            BREVO_SEND_URL,
            json={
                "sender": {"email": self.sender_email, "name": self.sender_name},
                "to": [{"email": to}],
                "subject": subject,
                "htmlContent": html_content,
            },
            headers={"api-key": self.api_key, "Accept": "application/json"},
        )
        response.raise_for_status()
        return response.json().get("messageId")


class CreditEmailNotifier:
    def __init__(self, mailer: BrevoMailer, storage: Storage, support_email: str):
        self.mailer = mailer
        self.storage = storage
        self.support_email = support_email

    @classmethod
    def from_settings(cls, settings, storage: Storage) -> "CreditEmailNotifier":
        mailer = BrevoMailer(
            settings.BREVO_API_KEY, settings.BREVO_SENDER_EMAIL, settings.BREVO_SENDER_NAME,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
        return cls(mailer, storage, settings.SUPPORT_EMAIL)

    def notify_credit_change(
        self,
        email: str,
        reason: str,
        delta: int,
        new_balance: int,
        occurred_at: datetime,
        amount_usd=None,
        origin_site: Optional[str] = None,
        ledger_id: Optional[str] = None,
        stripe_event_id: Optional[str] = None,
        stripe_session_id: Optional[str] = None,
    ) -> Optional[str]:
        if not self.mailer.is_available:
            logger.warning("email_disabled", email=email, reason=reason)
            return None
        subject, body = build_credit_update_email(
            reason, delta, new_balance, occurred_at, self.support_email,
            amount_usd=amount_usd, origin_site=origin_site,
        )
        message_id = None
        status = "sent"
        try:
            message_id = self.mailer.send(email, subject, body)
        except Exception:
            status = "failed"
            logger.error("email_send_failed", email=email, reason=reason, exc_info=True)

        try:
            self.storage.insert(EMAIL_LOG, {
                "email": email,
                "notification_type": reason or "credits_updated",
                "provider": "brevo",
                "provider_message_id": message_id,
                "payload": {
                    "delta": delta,
                    "new_balance": new_balance,
                    "amount_usd": str(amount_usd) if amount_usd is not None else None,
                    "origin_site": origin_site,
                    "ledger_id": ledger_id,
                    "stripe_event_id": stripe_event_id,
                    "stripe_session_id": stripe_session_id,
                },
                "status": status,
                "created_at": occurred_at,
            })
        except Exception:
            logger.error("email_log_insert_failed", email=email, exc_info=True)
        return message_id
