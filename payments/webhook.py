from typing import Optional

import structlog

from ledger.journal import Journal

from .gateway import PaymentGateway
from .models import CheckoutSession, PaymentEvent, ReconciliationResult, WebhookAck
from .reconciliation import ReconciliationEngine

logger = structlog.get_logger().bind(component="webhook")

SESSION_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"


class WebhookProcessor:
    """Verifies webhook deliveries and reconciles them after the response has gone out."""

    def __init__(self, gateway: PaymentGateway, engine: ReconciliationEngine, journal: Journal):
        self.gateway = gateway
        self.engine = engine
        self.journal = journal

    def verify(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        return self.gateway.construct_event(payload, signature)

    def acknowledge(self, event: PaymentEvent) -> WebhookAck:
        if self.journal.event_processed(event.id):
            logger.info("duplicate_webhook_event", event_id=event.id, event_type=event.type)
            return WebhookAck(status="already_processed", event_id=event.id)
        return WebhookAck(status="accepted", event_id=event.id)

    def handle_event(self, event: PaymentEvent) -> Optional[ReconciliationResult]:
        """Reconcile a verified event. Errors are logged, never raised: the delivery is already acknowledged."""
        log = logger.bind(event_id=event.id, event_type=event.type)
        try:
            if event.type == SESSION_COMPLETED:
                if event.session is None or not event.session.is_paid:
                    log.info("session_not_paid_yet", session_id=event.session.id if event.session else None)
                    return None
                return self.engine.reconcile(self._with_line_items(event.session), source_event_id=event.id)
            if event.type == ASYNC_PAYMENT_SUCCEEDED and event.session is not None:
                return self.engine.reconcile(self._with_line_items(event.session), source_event_id=event.id)
            log.info("unhandled_event_type")
            return None
        except Exception:
            log.error("webhook_reconciliation_failed", exc_info=True)
            return None

    def _with_line_items(self, session: CheckoutSession) -> CheckoutSession:
        # Event payloads never expand line items; legacy sessions without
        # product metadata are told apart by their price id.
        if session.has_mode_metadata or session.price_ids:
            return session
        return self.gateway.retrieve_session(session.id) or session
