import json

import pytest

from conftest import VALID_SIGNATURE, make_session
from ledger.errors import WebhookSignatureError
from ledger.storage import LEDGER
from payments.models import PaymentEvent, ReconciliationStatus


def event_payload(event_id, event_type, session):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": session.model_dump()}}).encode()


class TestWebhookProcessor:
    """Tests for webhook verification and background handling."""

    def test_bad_signature_rejected(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")

        with pytest.raises(WebhookSignatureError):
            services.webhook.verify(event_payload("evt_1", "checkout.session.completed", session), "t=1,v1=forged")

    def test_completed_event_is_reconciled(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")
        event = services.webhook.verify(event_payload("evt_1", "checkout.session.completed", session), VALID_SIGNATURE)

        assert services.webhook.acknowledge(event).status == "accepted"
        result = services.webhook.handle_event(event)

        assert result.status == ReconciliationStatus.PROCESSED
        assert services.webhook.acknowledge(event).status == "already_processed"

    def test_completed_but_unpaid_session_is_ignored(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")
        session = session.model_copy(update={"payment_status": "unpaid", "status": "complete"})

        assert services.webhook.handle_event(PaymentEvent(id="evt_1", type="checkout.session.completed", session=session)) is None
        assert services.storage.select(LEDGER) == []

    def test_delayed_payment_is_granted_once_it_succeeds(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")
        pending = session.model_copy(update={"payment_status": "unpaid", "status": "complete"})
        services.webhook.handle_event(PaymentEvent(id="evt_1", type="checkout.session.completed", session=pending))

        result = services.webhook.handle_event(
            PaymentEvent(id="evt_2", type="checkout.session.async_payment_succeeded", session=session)
        )

        assert result.status == ReconciliationStatus.PROCESSED
        assert services.balances.get_user("a@x.com")["total_credits"] == 49

    def test_no_payment_required_counts_as_paid(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")
        session = session.model_copy(update={"payment_status": "no_payment_required"})

        result = services.webhook.handle_event(PaymentEvent(id="evt_1", type="checkout.session.completed", session=session))

        assert result.status == ReconciliationStatus.PROCESSED

    def test_async_payment_succeeded(self, services):
        session = make_session("cs_1", payment_type="lifetime_purchase", tier="basic")

        result = services.webhook.handle_event(
            PaymentEvent(id="evt_2", type="checkout.session.async_payment_succeeded", session=session)
        )

        assert result.delta == 49

    def test_errors_are_swallowed(self, services):
        session = make_session("cs_1", email=None, payment_type="lifetime_purchase", tier="basic")

        assert services.webhook.handle_event(PaymentEvent(id="evt_1", type="checkout.session.completed", session=session)) is None

    def test_legacy_session_resolved_through_line_items(self, services, gateway):
        session = make_session("cs_legacy", amount_total=4900)
        gateway.add_session(session.model_copy(update={"price_ids": ["price_crowbar"]}))

        result = services.webhook.handle_event(
            PaymentEvent(id="evt_1", type="checkout.session.completed", session=session)
        )

        assert result.mode == "crowbar_master"
        assert services.balances.get_user("a@x.com")["crowbar_access"] is True

    def test_legacy_session_without_line_items_falls_back(self, services):
        result = services.webhook.handle_event(
            PaymentEvent(id="evt_1", type="checkout.session.completed", session=make_session("cs_legacy"))
        )

        assert result.mode == "access_pass"

    def test_other_event_types_ignored(self, services):
        assert services.webhook.handle_event(PaymentEvent(id="evt_1", type="invoice.paid")) is None
