import pytest
from decimal import Decimal

from ledger.errors import NotFoundError, ValidationError
from payments.models import CreateCheckoutRequest


class TestCreateSession:
    """Tests for checkout session creation."""

    def test_lifetime_purchase_carries_intent_in_metadata(self, services, gateway):
        response = services.checkout.create_session(
            CreateCheckoutRequest(email="A@x.com", product_type="lifetime_purchase", tier="basic")
        )

        created = gateway.created[0]
        assert response.session_id == "cs_test_1"
        assert response.url.endswith("cs_test_1")
        assert created["amount_usd"] == Decimal("49")
        assert created["metadata"] == {"user_email": "a@x.com", "payment_type": "lifetime_purchase", "tier": "basic"}
        assert created["success_url"].startswith("https://crowbar.test/payment-success")

    def test_discount_tier_requires_age_verification(self, services, gateway):
        with pytest.raises(ValidationError) as exc:
            services.checkout.create_session(
                CreateCheckoutRequest(email="a@x.com", product_type="lifetime_purchase", tier="discount19")
            )

        assert exc.value.code == "age_verification_required"
        assert gateway.created == []

    def test_discount_tier_with_age_fields(self, services, gateway):
        services.checkout.create_session(CreateCheckoutRequest(
            email="a@x.com", product_type="lifetime_purchase", tier="discount19",
            age_confirmed=True, dob="1990-01-01",
        ))

        assert gateway.created[0]["amount_usd"] == Decimal("19")
        assert gateway.created[0]["metadata"]["dob"] == "1990-01-01"

    def test_limited_pass(self, services, gateway):
        services.checkout.create_session(CreateCheckoutRequest(
            email="a@x.com", product_type="limited_pass", partner="CareDuel", amount=Decimal("9"),
        ))

        metadata = gateway.created[0]["metadata"]
        assert metadata["partner"] == "careduel"
        assert metadata["amount"] == "9.00"

    def test_limited_pass_rejects_other_amounts(self, services):
        with pytest.raises(ValidationError):
            services.checkout.create_session(CreateCheckoutRequest(
                email="a@x.com", product_type="limited_pass", partner="careduel", amount=Decimal("10"),
            ))

    def test_balance_upgrade_prices_the_remainder(self, services, gateway):
        services.balances.update_user("a@x.com", {"access_mode": "limited", "limited_paid_amount": Decimal("14")})

        response = services.checkout.create_session(
            CreateCheckoutRequest(email="a@x.com", product_type="balance_upgrade")
        )

        assert response.amount_usd == Decimal("35.00")

    def test_balance_upgrade_needs_limited_pass(self, services):
        with pytest.raises(ValidationError):
            services.checkout.create_session(CreateCheckoutRequest(email="a@x.com", product_type="balance_upgrade"))

    def test_legacy_product_uses_configured_price(self, services, gateway):
        services.checkout.create_session(CreateCheckoutRequest(email="a@x.com", product_type="careduel", legal_accept=True))

        assert gateway.created[0]["price_id"] == "price_careduel"
        assert gateway.created[0]["metadata"]["legal_accept"] == "true"

    def test_legacy_product_without_price(self, services):
        with pytest.raises(ValidationError):
            services.checkout.create_session(CreateCheckoutRequest(email="a@x.com", product_type="ecoworldbuy"))

    def test_unknown_product(self, services):
        with pytest.raises(ValidationError):
            services.checkout.create_session(CreateCheckoutRequest(email="a@x.com", product_type="merch"))


class TestSessionStatus:
    """Tests for session status lookups."""

    def test_reports_major_units(self, services, gateway):
        services.checkout.create_session(
            CreateCheckoutRequest(email="a@x.com", product_type="lifetime_purchase", tier="pro")
        )
        gateway.pay("cs_test_1")

        status = services.checkout.session_status("cs_test_1")

        assert status.payment_status == "paid"
        assert status.amount_total == Decimal("99.00")

    def test_unknown_session(self, services):
        with pytest.raises(NotFoundError):
            services.checkout.session_status("cs_missing")
