"""API tests for the payment endpoints and the gateway callbacks.

Covers intent creation, server-side signature verification, the browser's
failure and dismissal callbacks, operator cancellation and fulfilment.
"""
import pytest

from apps.orders import adapters
from apps.orders.models import OrderModel
from apps.orders.signatures import payment_signature

VERIFY_URL = "/api/payment/verify/"
INTENT_URL = "/api/payment/create-order/"


@pytest.fixture
def online_order(place):
    body = place("online").json()
    return body["orderId"], body["gatewayOrder"]["id"]


def verify(client, order_id, gid, pid, signature):
    payload = {"orderId": order_id, "gatewayOrderId": gid, "gatewayPaymentId": pid, "signature": signature}
    return client.post(VERIFY_URL, data=payload, content_type="application/json")


@pytest.mark.django_db
def test_verify_confirms_order_and_clears_cart(client, settings, online_order):
    order_id, gid = online_order
    sig = payment_signature(gid, "pay_1", settings.GATEWAY_KEY_SECRET)

    r = verify(client, order_id, gid, "pay_1", sig)
    assert r.status_code == 200
    assert r.json() == {"success": True, "orderId": order_id, "status": "confirmed"}

    row = OrderModel.objects.get(order_id=order_id)
    assert (row.status, row.payment_status, row.gateway_payment_id) == ("confirmed", "completed", "pay_1")
    assert client.get("/api/cart/").json()["items"] == []

    # a duplicate callback is a no-op success
    assert verify(client, order_id, gid, "pay_1", sig).status_code == 200


@pytest.mark.django_db
def test_verify_accepts_gateway_field_names(client, settings, online_order):
    order_id, gid = online_order
    payload = {
        "orderId": order_id,
        "razorpay_order_id": gid,
        "razorpay_payment_id": "pay_2",
        "razorpay_signature": payment_signature(gid, "pay_2", settings.GATEWAY_KEY_SECRET),
    }
    r = client.post(VERIFY_URL, data=payload, content_type="application/json")
    assert r.status_code == 200


@pytest.mark.django_db
def test_verify_rejects_bad_signature(client, settings, online_order):
    order_id, gid = online_order
    r = verify(client, order_id, gid, "pay_1", payment_signature(gid, "pay_1", "not-the-secret"))
    assert r.status_code == 401
    assert r.json()["detail"] == "VERIFICATION_FAILED"

    row = OrderModel.objects.get(order_id=order_id)
    assert (row.status, row.payment_status) == ("pending_payment", "pending")
    assert len(client.get("/api/cart/").json()["items"]) == 1


@pytest.mark.django_db
def test_verify_unknown_order(client, settings):
    sig = payment_signature("order_x", "pay_x", settings.GATEWAY_KEY_SECRET)
    r = verify(client, "ORD-0-NOPE00", "order_x", "pay_x", sig)
    assert r.status_code == 404


@pytest.mark.django_db
def test_verify_requires_all_fields(client):
    r = client.post(VERIFY_URL, data={"orderId": "ORD-1"}, content_type="application/json")
    assert r.status_code == 400


@pytest.mark.django_db
def test_payment_failed_callback_keeps_cart(client, online_order):
    """Scenario D over HTTP."""
    order_id, _ = online_order
    r = client.post(f"/api/orders/{order_id}/payment/failed/", data={"description": "Card declined"},
                    content_type="application/json")
    assert r.status_code == 200
    doc = r.json()
    assert (doc["status"], doc["paymentStatus"], doc["paymentError"]) == ("payment_failed", "failed", "Card declined")
    assert len(client.get("/api/cart/").json()["items"]) == 1


@pytest.mark.django_db
def test_payment_dismissed_callback(client, online_order):
    """Scenario E over HTTP."""
    order_id, _ = online_order
    r = client.post(f"/api/orders/{order_id}/payment/dismissed/")
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["paymentStatus"]) == ("payment_cancelled", "cancelled")


@pytest.mark.django_db
def test_request_intent_for_pending_order(client, place, monkeypatch):
    """A pending order left behind by a gateway outage can request its intent later."""
    monkeypatch.setattr("apps.orders.providers.get_gateway", lambda: adapters.GatewayStub(fail=True), raising=True)
    order_id = place("online").json()["orderId"]
    monkeypatch.undo()

    r = client.post(INTENT_URL, data={"amount": 1, "orderId": order_id}, content_type="application/json")
    assert r.status_code == 422
    assert r.json()["detail"] == "AMOUNT_MISMATCH"

    r = client.post(INTENT_URL, data={"amount": 522, "currency": "usd", "orderId": order_id},
                    content_type="application/json")
    assert r.status_code == 422
    assert r.json()["detail"] == "UNSUPPORTED_CURRENCY"

    r = client.post(INTENT_URL, data={"amount": 522, "orderId": order_id}, content_type="application/json")
    assert r.status_code == 200
    body = r.json()
    assert body["amount"] == 52200
    assert body["receipt"] == order_id
    assert OrderModel.objects.get(order_id=order_id).gateway_order_id == body["id"]


@pytest.mark.django_db
def test_request_intent_for_cod_order(client, place):
    order_id = place("cod").json()["orderId"]
    r = client.post(INTENT_URL, data={"amount": 522, "orderId": order_id}, content_type="application/json")
    assert r.status_code == 422
    assert r.json()["detail"] == "NOT_ONLINE_PAYMENT"


@pytest.mark.django_db
def test_request_intent_unknown_order(client):
    r = client.post(INTENT_URL, data={"amount": 522, "orderId": "ORD-0-NOPE00"}, content_type="application/json")
    assert r.status_code == 404


@pytest.mark.django_db
def test_cancel_order(client, place):
    order_id = place("cod").json()["orderId"]
    r = client.post(f"/api/orders/{order_id}/cancel/", data={"reason": "changed my mind"},
                    content_type="application/json")
    assert r.status_code == 200
    assert (r.json()["status"], r.json()["cancellationReason"]) == ("cancelled", "changed my mind")

    again = client.post(f"/api/orders/{order_id}/cancel/")
    assert again.status_code == 409
    assert again.json()["detail"] == "CANNOT_CANCEL"


@pytest.mark.django_db
def test_ship_deliver_and_no_cancel_after_shipping(client, place):
    order_id = place("cod").json()["orderId"]
    assert client.post(f"/api/orders/{order_id}/ship/").json()["status"] == "shipped"
    assert client.post(f"/api/orders/{order_id}/cancel/").status_code == 409
    assert client.post(f"/api/orders/{order_id}/deliver/").json()["status"] == "delivered"


@pytest.mark.django_db
def test_cannot_ship_unpaid_order(client, online_order):
    order_id, _ = online_order
    r = client.post(f"/api/orders/{order_id}/ship/")
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_TRANSITION"


@pytest.mark.django_db
def test_verify_loses_race_with_cancellation(client, settings, online_order, monkeypatch):
    """An operator cancels between the read and the conditional confirm write."""
    from apps.orders.repository import OrderRepository

    order_id, gid = online_order
    original_update = OrderRepository.update

    def racing_update(self, oid, expect_status=None, **fields):
        if expect_status is not None:
            OrderModel.objects.filter(order_id=oid).update(status="cancelled")
        return original_update(self, oid, expect_status=expect_status, **fields)

    monkeypatch.setattr(OrderRepository, "update", racing_update)

    r = verify(client, order_id, gid, "pay_1", payment_signature(gid, "pay_1", settings.GATEWAY_KEY_SECRET))
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_TRANSITION"
    assert OrderModel.objects.get(order_id=order_id).status == "cancelled"
