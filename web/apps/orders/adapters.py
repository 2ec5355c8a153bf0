"""In-process stub adapters for the orders domain ports.

These stubs implement ``OrderLedgerPort``, ``PaymentGatewayPort`` and
``OrderNotifierPort`` without any network or database access. They are
intended for unit tests and local development where deterministic behavior
is useful and the hosted gateway and chat channels are not required.
"""

import copy
import logging
import secrets
import string
import time
from dataclasses import replace
from typing import Dict, List, Optional

from django.utils import timezone

from .domain import (
    GatewayIntent,
    GatewayUnavailable,
    Order,
    OrderLedgerPort,
    OrderNotFound,
    OrderNotifierPort,
    OrderStatus,
    PaymentGatewayPort,
    StaleOrderState,
)
from .repository import IMMUTABLE_FIELDS, MUTABLE_FIELDS

logger = logging.getLogger(__name__)


class InMemoryOrderLedger(OrderLedgerPort):
    """Dict-backed ledger with the same merge semantics as ``OrderRepository``.

    Stored orders are deep copies, so callers mutating the object they
    passed to ``create`` cannot change what is stored.
    """

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self.writes = 0

    def create(self, order: Order) -> str:
        now = timezone.now()
        order.created_at = order.created_at or now
        order.updated_at = order.updated_at or now
        self._orders[order.order_id] = copy.deepcopy(order)
        self.writes += 1
        return order.order_id

    def update(self, order_id: str, expect_status: Optional[OrderStatus] = None, **fields) -> Order:
        for name in fields:
            if name in IMMUTABLE_FIELDS:
                raise ValueError("IMMUTABLE_FIELD")
            if name not in MUTABLE_FIELDS:
                raise ValueError("UNKNOWN_FIELD")
        current = self._orders.get(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        if expect_status is not None and current.status != expect_status:
            raise StaleOrderState(order_id)
        self._orders[order_id] = replace(current, updated_at=timezone.now(), **fields)
        self.writes += 1
        return self.get(order_id)

    def get(self, order_id: str) -> Order:
        try:
            return copy.deepcopy(self._orders[order_id])
        except KeyError:
            raise OrderNotFound(order_id) from None

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        for order in self._orders.values():
            if order.gateway_order_id == gateway_order_id:
                return copy.deepcopy(order)
        return None


class GatewayStub(PaymentGatewayPort):
    """Stub gateway that issues demo intent ids.

    Ids look like ``order_demo_<millis>_<6 chars>``. Setting ``fail`` makes
    every call raise ``GatewayUnavailable``.
    """

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.intents: List[GatewayIntent] = []

    def create_intent(self, amount: int, currency: str, receipt: str, notes: dict) -> GatewayIntent:
        """Return a demo intent for ``amount`` minor units.

        Raises:
            GatewayUnavailable: When the stub is configured to fail or the
                amount is not positive.
        """
        if self.fail:
            raise GatewayUnavailable("gateway stub configured to fail")
        if amount <= 0:
            raise GatewayUnavailable("amount must be positive")
        suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
        intent = GatewayIntent(id=f"order_demo_{int(time.time() * 1000)}_{suffix}", amount=amount, currency=currency)
        self.intents.append(intent)
        return intent


class RecordingNotifier(OrderNotifierPort):
    """Notifier that logs and remembers the orders it was asked to announce."""

    def __init__(self):
        self.confirmed: List[str] = []

    def order_confirmed(self, order: Order) -> None:
        self.confirmed.append(order.order_id)
        logger.info("order confirmed (stub notifier)", extra={"order_id": order.order_id})
