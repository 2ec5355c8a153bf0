"""Unit tests for the payment orchestrator state machine.

These run against the in-memory ledger, the gateway stub and the recording
notifier from ``apps.orders.adapters``; no database is involved.
"""

import re

import pytest

from apps.orders.adapters import GatewayStub
from apps.orders.domain import (
    MINOR_UNITS,
    TRANSITIONS,
    GatewayUnavailable,
    InvalidTransition,
    OrderEvent,
    OrderNotFound,
    OrderStatus,
    PaymentMethod,
    PaymentOrchestrator,
    PaymentStatus,
    VerificationOutcome,
    new_order_id,
    transition,
)


def place_online(orchestrator, lines, address, policy):
    order, intent = orchestrator.place_order("user-1", lines, address, "online", policy)
    return order, intent


def test_order_id_format():
    assert re.fullmatch(r"ORD-1700000000000-[A-Z0-9]{6}", new_order_id(1700000000000))
    assert new_order_id() != new_order_id()


def test_cod_order_confirmed_with_single_write(orchestrator, ledger, notifier, lines, address, policy):
    """Scenario C: COD orders are written once as confirmed/pending_cod and announced."""
    order = orchestrator.create_order("user-1", lines, address, "cod", policy)

    stored = ledger.get(order.order_id)
    assert stored.status is OrderStatus.CONFIRMED
    assert stored.payment_status is PaymentStatus.PENDING_COD
    assert stored.payment_method is PaymentMethod.COD
    assert stored.summary.total == 522
    assert ledger.writes == 1
    assert notifier.confirmed == [order.order_id]


def test_notification_failure_does_not_affect_order(ledger, gateway, lines, address, policy):
    from apps.orders.notifications import InlineDispatcher, NotificationFanout

    class BrokenChannel:
        name = "broken"

        def send(self, payload):
            raise RuntimeError("webhook down")

    orch = PaymentOrchestrator(ledger, gateway, NotificationFanout([BrokenChannel()], InlineDispatcher()), "s")
    order = orch.create_order("user-1", lines, address, "cod", policy)
    assert ledger.get(order.order_id).status is OrderStatus.CONFIRMED


def test_online_order_starts_pending_then_awaits_payment(orchestrator, ledger, gateway, notifier, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "online", policy)
    assert (order.status, order.payment_status) == (OrderStatus.PENDING, PaymentStatus.PENDING)
    assert notifier.confirmed == []

    intent = orchestrator.request_gateway_intent(order.order_id, amount=522)
    assert intent.amount == 522 * MINOR_UNITS
    assert intent.currency == "INR"
    assert gateway.intents == [intent]

    stored = ledger.get(order.order_id)
    assert stored.status is OrderStatus.PENDING_PAYMENT
    assert stored.gateway_order_id == intent.id


def test_repeated_intent_request_returns_existing_intent(orchestrator, gateway, lines, address, policy):
    order, intent = place_online(orchestrator, lines, address, policy)
    again = orchestrator.request_gateway_intent(order.order_id)
    assert again.id == intent.id
    assert len(gateway.intents) == 1


def test_intent_amount_mismatch_rejected(orchestrator, ledger, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "online", policy)
    with pytest.raises(ValueError, match="AMOUNT_MISMATCH"):
        orchestrator.request_gateway_intent(order.order_id, amount=1)
    assert ledger.get(order.order_id).status is OrderStatus.PENDING


def test_intent_for_cod_order_rejected(orchestrator, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "cod", policy)
    with pytest.raises(ValueError, match="NOT_ONLINE_PAYMENT"):
        orchestrator.request_gateway_intent(order.order_id)


def test_gateway_unavailable_leaves_order_pending(ledger, notifier, lines, address, policy):
    orch = PaymentOrchestrator(ledger, GatewayStub(fail=True), notifier, "s")
    with pytest.raises(GatewayUnavailable) as exc:
        orch.place_order("user-1", lines, address, "online", policy)

    stored = ledger.get(exc.value.order_id)
    assert stored.status is OrderStatus.PENDING
    assert stored.gateway_order_id is None


def test_verified_payment_confirms_once(orchestrator, ledger, notifier, sign, lines, address, policy):
    order, intent = place_online(orchestrator, lines, address, policy)
    sig = sign(intent.id, "pay_1")

    assert orchestrator.verify_and_confirm(order.order_id, intent.id, "pay_1", sig) is VerificationOutcome.CONFIRMED
    stored = ledger.get(order.order_id)
    assert (stored.status, stored.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED)
    assert stored.gateway_payment_id == "pay_1"

    writes = ledger.writes
    assert orchestrator.verify_and_confirm(order.order_id, intent.id, "pay_1", sig) is VerificationOutcome.CONFIRMED
    assert ledger.writes == writes
    assert notifier.confirmed == [order.order_id]


@pytest.mark.parametrize("tamper", ["order", "payment", "signature", "secret"])
def test_tampered_callback_fails_closed(orchestrator, ledger, notifier, sign, lines, address, policy, tamper):
    order, intent = place_online(orchestrator, lines, address, policy)
    gid, pid = intent.id, "pay_1"
    sig = sign(gid, pid, "other_secret") if tamper == "secret" else sign(gid, pid)
    if tamper == "order":
        gid = gid + "x"
    elif tamper == "payment":
        pid = "pay_2"
    elif tamper == "signature":
        sig = sig[:-1] + ("0" if sig[-1] != "0" else "1")

    result = orchestrator.verify_and_confirm(order.order_id, gid, pid, sig)
    assert result is VerificationOutcome.VERIFICATION_FAILED
    assert ledger.get(order.order_id).status is OrderStatus.PENDING_PAYMENT
    assert notifier.confirmed == []


def test_signature_for_another_intent_is_rejected(orchestrator, ledger, sign, lines, address, policy):
    order, _ = place_online(orchestrator, lines, address, policy)
    other, other_intent = place_online(orchestrator, lines, address, policy)

    sig = sign(other_intent.id, "pay_9")
    result = orchestrator.verify_and_confirm(order.order_id, other_intent.id, "pay_9", sig)
    assert result is VerificationOutcome.VERIFICATION_FAILED
    assert ledger.get(order.order_id).status is OrderStatus.PENDING_PAYMENT


def test_verify_unknown_order(orchestrator, sign):
    with pytest.raises(OrderNotFound):
        orchestrator.verify_and_confirm("ORD-missing", "order_x", "pay_x", sign("order_x", "pay_x"))


def test_gateway_failure_marks_payment_failed(orchestrator, ledger, lines, address, policy):
    """Scenario D."""
    order, _ = place_online(orchestrator, lines, address, policy)
    updated = orchestrator.record_gateway_failure(order.order_id, "Card declined")
    assert (updated.status, updated.payment_status) == (OrderStatus.PAYMENT_FAILED, PaymentStatus.FAILED)
    assert updated.payment_error == "Card declined"


def test_gateway_dismissal_marks_payment_cancelled(orchestrator, lines, address, policy):
    """Scenario E."""
    order, _ = place_online(orchestrator, lines, address, policy)
    updated = orchestrator.record_gateway_dismissal(order.order_id)
    assert (updated.status, updated.payment_status) == (OrderStatus.PAYMENT_CANCELLED, PaymentStatus.CANCELLED)


def test_late_failure_after_confirmation_is_ignored(orchestrator, ledger, sign, lines, address, policy):
    order, intent = place_online(orchestrator, lines, address, policy)
    orchestrator.verify_and_confirm(order.order_id, intent.id, "pay_1", sign(intent.id, "pay_1"))

    unchanged = orchestrator.record_gateway_failure(order.order_id, "late")
    assert unchanged.status is OrderStatus.CONFIRMED
    assert unchanged.payment_error is None


def test_verified_capture_after_dismissal_confirms(orchestrator, ledger, sign, lines, address, policy):
    order, intent = place_online(orchestrator, lines, address, policy)
    orchestrator.record_gateway_dismissal(order.order_id)

    result = orchestrator.verify_and_confirm(order.order_id, intent.id, "pay_1", sign(intent.id, "pay_1"))
    assert result is VerificationOutcome.CONFIRMED
    assert ledger.get(order.order_id).status is OrderStatus.CONFIRMED


def test_verified_capture_after_failure_confirms(orchestrator, ledger, notifier, sign, lines, address, policy):
    order, intent = place_online(orchestrator, lines, address, policy)
    orchestrator.record_gateway_failure(order.order_id, "Card declined")

    result = orchestrator.verify_and_confirm(order.order_id, intent.id, "pay_2", sign(intent.id, "pay_2"))
    assert result is VerificationOutcome.CONFIRMED
    stored = ledger.get(order.order_id)
    assert (stored.status, stored.payment_status) == (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED)
    assert stored.payment_error is None
    assert notifier.confirmed == [order.order_id]


@pytest.mark.parametrize("cart,address_given,method,code", [
    ([], True, "cod", "EMPTY_CART"),
    (None, False, "cod", "ADDRESS_REQUIRED"),
    (None, True, "cheque", "INVALID_PAYMENT_METHOD"),
])
def test_create_order_validation(orchestrator, ledger, lines, address, policy, cart, address_given, method, code):
    with pytest.raises(ValueError, match=code):
        orchestrator.create_order(
            "user-1", lines if cart is None else cart, address if address_given else None, method, policy
        )
    assert ledger.writes == 0


def test_order_snapshot_is_independent_of_cart(orchestrator, ledger, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "cod", policy)
    lines.append(lines[0])
    stored = ledger.get(order.order_id)
    assert len(stored.items) == 1
    assert stored.address == address


def test_cancel_before_shipment(orchestrator, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "cod", policy)
    cancelled = orchestrator.cancel_order(order.order_id, "customer request")
    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.cancellation_reason == "customer request"

    with pytest.raises(ValueError, match="CANNOT_CANCEL"):
        orchestrator.cancel_order(order.order_id)


def test_cannot_cancel_after_shipment(orchestrator, lines, address, policy):
    order = orchestrator.create_order("user-1", lines, address, "cod", policy)
    orchestrator.advance(order.order_id, OrderEvent.SHIPPED)
    with pytest.raises(ValueError, match="CANNOT_CANCEL"):
        orchestrator.cancel_order(order.order_id)

    delivered = orchestrator.advance(order.order_id, OrderEvent.DELIVERED)
    assert delivered.status is OrderStatus.DELIVERED


def test_cannot_ship_unpaid_online_order(orchestrator, lines, address, policy):
    order, _ = place_online(orchestrator, lines, address, policy)
    with pytest.raises(InvalidTransition):
        orchestrator.advance(order.order_id, OrderEvent.SHIPPED)


def test_no_transition_leaves_a_terminal_state():
    for status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
        assert not [k for k in TRANSITIONS if k[0] is status]
        with pytest.raises(InvalidTransition):
            transition(status, OrderEvent.OPERATOR_CANCEL)


def test_confirmed_is_only_reached_by_cod_or_gateway_success():
    events = {event for (_, event), (to, _) in TRANSITIONS.items() if to is OrderStatus.CONFIRMED}
    assert events == {OrderEvent.COD_PLACED, OrderEvent.GATEWAY_SUCCESS}
