"""Shared fixtures: in-memory storage, a frozen clock, a fake payment gateway and a recording notifier."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from api.container import build_services
from config import Settings
from ledger.errors import WebhookSignatureError
from ledger.storage import InMemoryStorage
from payments.models import CheckoutSession, PaymentEvent

VALID_SIGNATURE = "t=1,v1=valid"


class FrozenClock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment = self.moment + timedelta(**kwargs)


class FakeGateway:
    """Stands in for Stripe: sessions live in a dict, signatures are a fixed string."""

    def __init__(self):
        self.sessions: dict[str, CheckoutSession] = {}
        self.created: list[dict] = []

    def create_session(self, email, metadata, success_url, cancel_url, price_id=None, amount_usd=None,
                       product_name=None) -> CheckoutSession:
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append({
            "email": email, "metadata": dict(metadata), "success_url": success_url,
            "cancel_url": cancel_url, "price_id": price_id, "amount_usd": amount_usd,
        })
        session = CheckoutSession(
            id=session_id,
            customer_email=email,
            amount_total=int(Decimal(amount_usd) * 100) if amount_usd is not None else None,
            metadata=dict(metadata),
            payment_status="unpaid",
            status="open",
            url=f"https://checkout.stripe.test/{session_id}",
        )
        self.sessions[session_id] = session
        return session

    def add_session(self, session: CheckoutSession) -> CheckoutSession:
        self.sessions[session.id] = session
        return session

    def pay(self, session_id: str, amount_total: Optional[int] = None) -> CheckoutSession:
        session = self.sessions[session_id]
        changes = {"payment_status": "paid", "status": "complete"}
        if amount_total is not None:
            changes["amount_total"] = amount_total
        self.sessions[session_id] = session.model_copy(update=changes)
        return self.sessions[session_id]

    def retrieve_session(self, session_id: str) -> Optional[CheckoutSession]:
        return self.sessions.get(session_id)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("Webhook Error: No signatures found matching the expected signature")
        event = json.loads(payload)
        obj = event["data"]["object"]
        session = CheckoutSession(**obj) if event["type"].startswith("checkout.session.") else None
        return PaymentEvent(id=event["id"], type=event["type"], session=session)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.calls: list[dict] = []
        self.fail = fail

    def notify_credit_change(self, email, reason, delta, new_balance, occurred_at, **kwargs):
        self.calls.append({"email": email, "reason": reason, "delta": delta, "new_balance": new_balance, **kwargs})
        if self.fail:
            raise RuntimeError("mail provider down")
        return "msg-1"


def make_session(session_id: str = "cs_1", email: str = "a@x.com", amount_total: Optional[int] = 4900,
                 currency: str = "usd", **metadata) -> CheckoutSession:
    meta = {"user_email": email} if email else {}
    meta.update({k: str(v) for k, v in metadata.items()})
    return CheckoutSession(
        id=session_id,
        amount_total=amount_total,
        currency=currency,
        metadata=meta,
        payment_status="paid",
        status="complete",
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def test_settings():
    return Settings(
        STRIPE_PRICE_ACCESS_PASS="price_access_pass",
        STRIPE_PRICE_CROWBAR_MASTER="price_crowbar",
        STRIPE_PRICE_CAREDUEL="price_careduel",
        BRIDGE_SHARED_SECRET="bridge-secret",
        FRONTEND_URL="https://crowbar.test",
    )


@pytest.fixture
def services(storage, gateway, notifier, clock, test_settings):
    return build_services(storage=storage, gateway=gateway, notifier=notifier, clock=clock, settings=test_settings)
