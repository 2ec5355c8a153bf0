"""Fixtures for the orders tests: carts, addresses and a wired orchestrator.

The orchestrator fixture runs on the in-memory ledger, the gateway stub and
the recording notifier, so domain tests need no database.
"""

import pytest

from apps.orders.adapters import GatewayStub, InMemoryOrderLedger, RecordingNotifier
from apps.orders.domain import Address, CartLine, PaymentOrchestrator
from apps.orders.pricing import PricingPolicy
from apps.orders.signatures import payment_signature

SECRET = "unit_secret"


@pytest.fixture
def lines():
    """Scenario A cart: two units at 200."""
    return [CartLine(product_id="P1", name="Masala Chai", price=200, quantity=2)]


@pytest.fixture
def address():
    return Address(
        id="1",
        name="Asha Rao",
        phone="+919800000001",
        street="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        postal_code="560001",
    )


@pytest.fixture
def policy():
    return PricingPolicy(tax_rate=0.18, free_shipping_threshold=500, flat_shipping_fee=50)


@pytest.fixture
def ledger():
    return InMemoryOrderLedger()


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(ledger, gateway, notifier):
    return PaymentOrchestrator(ledger, gateway, notifier, signing_secret=SECRET)


@pytest.fixture
def sign():
    """Sign ``(gateway_order_id, gateway_payment_id)`` like the gateway does."""
    return lambda gid, pid, secret=SECRET: payment_signature(gid, pid, secret)


@pytest.fixture
def saved_address(db):
    from apps.orders.repository import AddressBook

    return AddressBook().add("user-1", Address(
        name="Asha Rao",
        phone="+919800000001",
        street="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        postal_code="560001",
    ))


ITEMS = [{"productId": "P1", "name": "Masala Chai", "price": 200, "quantity": 2}]


@pytest.fixture
def place(client, saved_address):
    """POST an order for ``user-1`` at the saved address; extra kwargs become request headers."""

    def _place(method="cod", items=ITEMS, **headers):
        payload = {"userId": "user-1", "addressId": saved_address.id, "paymentMethod": method}
        if items is not None:
            payload["items"] = items
        return client.post("/api/orders/", data=payload, content_type="application/json", **headers)

    return _place
