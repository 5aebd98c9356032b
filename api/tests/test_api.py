"""
HTTP tests for the credits API, run against in-memory services.
"""

import json

import pytest
from fastapi.testclient import TestClient

from api import index
from conftest import VALID_SIGNATURE, make_session
from ledger.storage import LEDGER


@pytest.fixture
def client(services, monkeypatch):
    monkeypatch.setattr(index, "services", services)
    return TestClient(index.app, raise_server_exceptions=False)


def webhook_body(event_id, session):
    return json.dumps({
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": session.model_dump()},
    })


class TestSystem:
    """Health and error-shape tests."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_service_error_shape(self, client):
        response = client.get("/checkout/session-status/cs_missing")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "session_not_found",
                                   "message": "Session cs_missing not found"}

    def test_request_validation_is_a_400(self, client):
        response = client.post("/credits/earn", json={"email": "a@x.com", "amount": "lots", "origin": "site"})

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_unexpected_error_is_a_500(self, client, services, monkeypatch):
        def explode(email):
            raise RuntimeError("boom")

        monkeypatch.setattr(services.credits, "get_balance", explode)

        response = client.get("/credits/balance", params={"email": "a@x.com"})

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"


class TestCredits:
    """Credit endpoint tests."""

    def test_earn_then_balance(self, client):
        client.post("/credits/earn", json={"email": "a@x.com", "amount": 5, "origin": "careduel"})

        response = client.get("/credits/balance", params={"email": "A@x.com"})

        assert response.json() == {"success": True, "email": "a@x.com", "balance": 5}

    def test_unknown_user_access(self, client):
        response = client.get("/user/access", params={"email": "nobody@x.com"})

        assert response.status_code == 404
        assert response.json()["error"] == "user_not_found"


class TestWebhook:
    """Webhook endpoint tests."""

    def test_accepts_and_processes_in_background(self, client, services):
        body = webhook_body("evt_1", make_session("cs_1", payment_type="lifetime_purchase", tier="basic"))

        response = client.post("/payment/webhook", content=body, headers={"Stripe-Signature": VALID_SIGNATURE})

        assert response.status_code == 202
        assert response.json()["status"] == "accepted"
        assert services.balances.get_user("a@x.com")["total_credits"] == 49

    def test_redelivery_is_acknowledged_without_reprocessing(self, client, services):
        body = webhook_body("evt_1", make_session("cs_1", payment_type="lifetime_purchase", tier="basic"))
        client.post("/payment/webhook", content=body, headers={"Stripe-Signature": VALID_SIGNATURE})

        response = client.post("/payment/webhook", content=body, headers={"Stripe-Signature": VALID_SIGNATURE})

        assert response.status_code == 202
        assert response.json()["status"] == "already_processed"
        assert len(services.storage.select(LEDGER)) == 1

    def test_bad_signature(self, client, services):
        body = webhook_body("evt_1", make_session("cs_1", payment_type="lifetime_purchase", tier="basic"))

        response = client.post("/payment/webhook", content=body, headers={"Stripe-Signature": "forged"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"
        assert services.storage.select(LEDGER) == []


class TestGateAndBridge:
    """Gate and bridge endpoint tests."""

    def test_gate_start_requires_legal_accept(self, client):
        response = client.post("/gate/start", json={"email": "a@x.com", "origin": "careduel"})

        assert response.status_code == 400
        assert response.json()["error"] == "legal_accept_required"

    def test_gate_start_returns_checkout(self, client):
        response = client.post("/gate/start", json={"email": "a@x.com", "origin": "careduel", "legal_accept": True})

        assert response.json()["need_payment"] is True
        assert response.json()["checkout_url"] == "https://checkout.stripe.test/cs_test_1"

    def test_bridge_requires_token(self, client):
        response = client.post("/bridge/sync-login", json={"email": "a@x.com", "source_brand": "careduel"})

        assert response.status_code == 401

    def test_bridge_with_token(self, client):
        response = client.post(
            "/bridge/sync-access",
            json={"email": "a@x.com", "product_type": "careduel"},
            headers={"X-Bridge-Token": "bridge-secret"},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "access_careduel enabled"
