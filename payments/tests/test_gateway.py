from payments.gateway import session_from_stripe


class TestSessionFromStripe:
    """Tests for converting Stripe session payloads."""

    def test_expanded_line_items(self):
        session = session_from_stripe({
            "id": "cs_1",
            "amount_total": 4900,
            "currency": "USD",
            "metadata": {"user_email": "a@x.com"},
            "payment_status": "paid",
            "status": "complete",
            "line_items": {"data": [{"price": {"id": "price_crowbar"}}, {"price": None}]},
        })

        assert session.price_ids == ["price_crowbar"]
        assert session.currency == "usd"
        assert session.is_paid

    def test_unexpanded_session(self):
        session = session_from_stripe({
            "id": "cs_1",
            "customer_details": {"email": "Buyer@x.com"},
            "metadata": {},
            "payment_status": "unpaid",
            "status": "complete",
        })

        assert session.price_ids == []
        assert session.email == "buyer@x.com"
        assert not session.is_paid
