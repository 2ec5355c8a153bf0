"""Tests for the address → payment → review checkout flow.

The flow runs on an in-memory cart and a dict-backed address book, with the
orchestrator from the shared fixtures.
"""

import pytest

from apps.orders.adapters import GatewayStub
from apps.orders.checkout import CheckoutFlow, CheckoutStep, InMemoryCartStore
from apps.orders.domain import OrderStatus, PaymentOrchestrator, PaymentStatus


class FakeAddressBook:
    def __init__(self, addresses):
        self.addresses = {a.id: a for a in addresses}

    def get(self, user_id, address_id):
        if not address_id:
            raise ValueError("ADDRESS_REQUIRED")
        try:
            return self.addresses[str(address_id)]
        except KeyError:
            raise ValueError("ADDRESS_NOT_FOUND") from None

    def default_for(self, user_id):
        return next(iter(self.addresses.values()), None)


@pytest.fixture
def cart(lines):
    return InMemoryCartStore(lines)


@pytest.fixture
def flow(orchestrator, cart, address, policy):
    return CheckoutFlow(orchestrator, cart, FakeAddressBook([address]), "user-1", policy)


def test_default_address_is_preselected(flow, address):
    assert flow.selected_address_id == address.id
    assert flow.can_place_order


def test_wizard_steps(flow, address):
    assert flow.step is CheckoutStep.ADDRESS
    assert flow.select_address(address.id).ok
    assert flow.step is CheckoutStep.PAYMENT
    assert flow.choose_payment("cod").ok
    assert flow.step is CheckoutStep.REVIEW
    flow.back()
    assert flow.step is CheckoutStep.PAYMENT


def test_unknown_address_rejected(flow):
    outcome = flow.select_address("99")
    assert not outcome.ok
    assert outcome.code == "ADDRESS_NOT_FOUND"


def test_invalid_payment_method(flow):
    outcome = flow.choose_payment("barter")
    assert (outcome.ok, outcome.code) == (False, "INVALID_PAYMENT_METHOD")


def test_totals_follow_cart(flow, cart, lines):
    assert flow.totals.total == 522
    cart.set([])
    assert flow.totals.total == 0
    assert not flow.can_place_order


def test_cod_checkout_clears_cart_and_redirects(flow, cart, ledger):
    """Scenario C through the flow."""
    flow.choose_payment("cod")
    outcome = flow.place_order()

    assert outcome.ok
    assert outcome.redirect == f"/order-confirmation/{outcome.order_id}"
    assert cart.get() == []
    assert flow.step is CheckoutStep.DONE
    assert not flow.processing
    assert ledger.get(outcome.order_id).status is OrderStatus.CONFIRMED


def test_online_checkout_confirms_after_verified_callback(flow, cart, ledger, sign):
    outcome = flow.place_order()
    assert outcome.ok and outcome.intent is not None
    assert flow.processing
    assert cart.get() != []

    done = flow.on_gateway_success(outcome.intent.id, "pay_1", sign(outcome.intent.id, "pay_1"))
    assert done.ok
    assert done.redirect == f"/order-confirmation/{outcome.order_id}"
    assert cart.get() == []
    assert ledger.get(outcome.order_id).payment_status is PaymentStatus.COMPLETED


def test_bad_signature_keeps_cart(flow, cart, ledger):
    outcome = flow.place_order()
    result = flow.on_gateway_success(outcome.intent.id, "pay_1", "bad")
    assert (result.ok, result.code) == (False, "VERIFICATION_FAILED")
    assert cart.get() != []
    assert ledger.get(outcome.order_id).status is OrderStatus.PENDING_PAYMENT


def test_gateway_failure_keeps_cart(flow, cart, ledger):
    """Scenario D through the flow."""
    outcome = flow.place_order()
    result = flow.on_gateway_failure("Card declined")

    assert not result.ok
    assert result.message == "Card declined"
    assert cart.get() != []
    assert not flow.processing
    stored = ledger.get(outcome.order_id)
    assert (stored.status, stored.payment_status) == (OrderStatus.PAYMENT_FAILED, PaymentStatus.FAILED)


def test_dismissal_reenables_place_order(flow, cart, ledger):
    """Scenario E through the flow."""
    first = flow.place_order()
    assert not flow.can_place_order

    result = flow.on_gateway_dismiss()
    assert result.code == "PAYMENT_CANCELLED"
    assert flow.can_place_order
    assert ledger.get(first.order_id).status is OrderStatus.PAYMENT_CANCELLED

    # re-attempt mints a new order
    second = flow.place_order()
    assert second.ok
    assert second.order_id != first.order_id


def test_double_submit_is_rejected(flow):
    flow.place_order()
    outcome = flow.place_order()
    assert outcome.code == "ORDER_IN_PROGRESS"


def test_empty_cart(orchestrator, address, policy):
    flow = CheckoutFlow(orchestrator, InMemoryCartStore(), FakeAddressBook([address]), "user-1", policy)
    outcome = flow.place_order()
    assert (outcome.ok, outcome.code) == (False, "EMPTY_CART")


def test_no_address(orchestrator, cart, policy):
    flow = CheckoutFlow(orchestrator, cart, FakeAddressBook([]), "user-1", policy)
    outcome = flow.place_order()
    assert (outcome.ok, outcome.code) == (False, "ADDRESS_REQUIRED")


def test_gateway_unavailable_reports_pending_order(ledger, notifier, cart, address, policy):
    orch = PaymentOrchestrator(ledger, GatewayStub(fail=True), notifier, "s")
    flow = CheckoutFlow(orch, cart, FakeAddressBook([address]), "user-1", policy)

    outcome = flow.place_order()
    assert (outcome.ok, outcome.code) == (False, "PAYMENT_INIT_FAILED")
    assert outcome.message == "Payment initialization failed"
    assert ledger.get(outcome.order_id).status is OrderStatus.PENDING
    assert not flow.processing
    assert cart.get() != []


def test_ledger_failure_reports_generic_error(gateway, notifier, cart, address, policy):
    class DownLedger:
        def create(self, order):
            raise ConnectionError("db down")

    orch = PaymentOrchestrator(DownLedger(), gateway, notifier, "s")
    flow = CheckoutFlow(orch, cart, FakeAddressBook([address]), "user-1", policy)
    outcome = flow.place_order()
    assert (outcome.ok, outcome.code) == (False, "ORDER_CREATE_FAILED")
    assert not flow.processing


def test_cart_subscribers_see_clear(flow, cart):
    seen = []
    unsubscribe = cart.subscribe(seen.append)
    flow.choose_payment("cod")
    flow.place_order()
    assert seen == [[]]
    unsubscribe()
    cart.set([])
    assert seen == [[]]
