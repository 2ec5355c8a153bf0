"""Reconciliation of asynchronous gateway webhook events.

The gateway posts payment events independently of the browser callbacks.
Deliveries are authenticated by ``verify_webhook_signature`` in the view;
this module only maps authenticated events onto orchestrator calls:

- ``payment.captured``  → confirm the order (idempotent, notifies once)
- ``payment.failed``    → record the failure on an order awaiting payment
- ``payment.authorized``→ remember the payment id, no status change
- anything else         → ignored

The order is located through ``notes.orderId`` on the payment entity and,
failing that, through the stored gateway intent id.
"""

import logging
from typing import Optional

from .domain import InvalidTransition, OrderNotFound, PaymentOrchestrator, VerificationOutcome

logger = logging.getLogger(__name__)


class GatewayWebhookHandler:
    def __init__(self, orchestrator: PaymentOrchestrator):
        self.orchestrator = orchestrator
        self.ledger = orchestrator.ledger

    def handle(self, event: dict) -> str:
        """Apply one webhook event.

        Returns:
            str: What happened: 'confirmed', 'failed', 'authorized',
            'ignored' or 'unmatched'.
        """
        name = event.get("event", "")
        payment = event.get("payload")
        for key in ("payment", "entity"):
            payment = payment.get(key) if isinstance(payment, dict) else None
        if not isinstance(payment, dict):
            payment = {}

        handler = {
            "payment.captured": self._captured,
            "payment.failed": self._failed,
            "payment.authorized": self._authorized,
        }.get(name)
        if handler is None or not payment:
            logger.info("ignoring gateway event", extra={"event": name})
            return "ignored"

        order_id = self._resolve_order_id(payment)
        if order_id is None:
            logger.warning("gateway event for unknown order", extra={
                "event": name, "gateway_order_id": payment.get("order_id"),
            })
            return "unmatched"

        try:
            return handler(order_id, payment)
        except (OrderNotFound, InvalidTransition) as e:
            logger.warning("gateway event not applicable", extra={
                "event": name, "order_id": order_id, "error": str(e),
            })
            return "ignored"

    def _resolve_order_id(self, payment: dict) -> Optional[str]:
        notes = payment.get("notes") or {}
        if isinstance(notes, dict) and notes.get("orderId"):
            return str(notes["orderId"])
        gateway_order_id = payment.get("order_id")
        if gateway_order_id:
            order = self.ledger.find_by_gateway_order_id(gateway_order_id)
            if order is not None:
                return order.order_id
        return None

    def _captured(self, order_id: str, payment: dict) -> str:
        if not payment.get("id"):
            logger.warning("captured event without payment id", extra={"order_id": order_id})
            return "ignored"
        result = self.orchestrator.confirm_captured_payment(order_id, payment.get("order_id", ""), payment["id"])
        return "confirmed" if result is VerificationOutcome.CONFIRMED else "unmatched"

    def _failed(self, order_id: str, payment: dict) -> str:
        description = payment.get("error_description") or payment.get("error_reason")
        self.orchestrator.record_gateway_failure(order_id, description)
        return "failed"

    def _authorized(self, order_id: str, payment: dict) -> str:
        payment_id = payment.get("id")
        if not payment_id:
            return "ignored"
        order = self.ledger.get(order_id)
        if not order.gateway_payment_id:
            self.ledger.update(order_id, gateway_payment_id=payment_id)
        return "authorized"
