import json
from datetime import datetime, timezone

import httpx
import pytest

from ledger.storage import EMAIL_LOG, InMemoryStorage
from notifications.email import BrevoMailer, CreditEmailNotifier, build_credit_update_email, reason_label

OCCURRED = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def mailer_with(handler, api_key="key-1"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return BrevoMailer(api_key, "noreply@crowbar.test", "Crowbar", client=client)


class TestReasonLabel:
    """Tests for the human-readable activity label."""

    @pytest.mark.parametrize("reason,label", [
        ("membership_purchase_basic", "Payment Successful"),
        ("limited_pass_careduel", "Payment Successful"),
        ("auto_upgrade_bonus", "Payment Successful"),
        ("referral_signup", "Credits Added"),
        ("action.rewarded", "Credits Added"),
        ("stripe_refund", "Refund Processed"),
        ("api.spend", "Credits Updated"),
        (None, "Credits Updated"),
    ])
    def test_labels(self, reason, label):
        assert reason_label(reason) == label


class TestEmailBody:
    def test_escapes_values(self):
        subject, body = build_credit_update_email(
            "api.earn", 5, 10, OCCURRED, "help@crowbar.test", origin_site="<script>",
        )

        assert subject == "Crowbar Credit Update: Credits Added"
        assert "+5" in body
        assert "&lt;script&gt;" in body
        assert "<script>" not in body


class TestCreditEmailNotifier:
    """Tests for sending and logging credit emails."""

    def test_sends_and_logs(self):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            assert request.headers["api-key"] == "key-1"
            return httpx.Response(201, json={"messageId": "msg-42"})

        storage = InMemoryStorage()
        notifier = CreditEmailNotifier(mailer_with(handler), storage, "help@crowbar.test")

        message_id = notifier.notify_credit_change("a@x.com", "membership_purchase_basic", 49, 49, OCCURRED,
                                                   stripe_session_id="cs_1")

        assert message_id == "msg-42"
        assert sent[0]["to"] == [{"email": "a@x.com"}]
        log = storage.select(EMAIL_LOG)[0]
        assert log["status"] == "sent"
        assert log["payload"]["stripe_session_id"] == "cs_1"

    def test_provider_failure_is_logged_not_raised(self):
        storage = InMemoryStorage()
        notifier = CreditEmailNotifier(mailer_with(lambda request: httpx.Response(500)), storage, "help@crowbar.test")

        assert notifier.notify_credit_change("a@x.com", "api.earn", 5, 5, OCCURRED) is None
        assert storage.select(EMAIL_LOG)[0]["status"] == "failed"

    def test_disabled_without_api_key(self):
        def handler(request):
            raise AssertionError("no request expected")

        storage = InMemoryStorage()
        notifier = CreditEmailNotifier(mailer_with(handler, api_key=""), storage, "help@crowbar.test")

        assert notifier.notify_credit_change("a@x.com", "api.earn", 5, 5, OCCURRED) is None
        assert storage.select(EMAIL_LOG) == []
