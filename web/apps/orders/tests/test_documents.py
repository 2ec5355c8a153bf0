"""Tests for the order document codec, including legacy storefront shapes."""

import pytest

from apps.orders.documents import CURRENT_SCHEMA_VERSION, decode_order, encode_order, schema_version
from apps.orders.domain import OrderStatus, PaymentMethod, PaymentStatus

LEGACY_DOC = {
    "orderId": "ORD-1690000000000-ABC123",
    "userId": "user-7",
    "customerInfo": {"name": "Ravi", "phone": "9800000002", "email": "ravi@example.com"},
    "items": [{"id": "P9", "name": "Filter Coffee", "price": 150, "quantity": 2}],
    "address": {"name": "Ravi", "address": "4 Park St", "city": "Kolkata", "state": "WB", "pincode": 700016},
    "paymentMethod": "razorpay",
    "subtotal": 300,
    "taxAmount": 54,
    "shippingCost": 50,
    "totalAmount": 404,
    "orderStatus": "confirmed",
    "paymentStatus": "verified",
    "razorpayOrderId": "order_legacy",
    "paymentId": "pay_legacy",
    "paymentError": {"code": "BAD_REQUEST_ERROR", "description": "Card declined"},
    "createdAt": "2023-07-22T10:00:00+00:00",
}


def test_schema_version_detection():
    assert schema_version(LEGACY_DOC) == 1
    assert schema_version({"summary": {}, "status": "pending"}) == CURRENT_SCHEMA_VERSION
    assert schema_version({"schemaVersion": 2}) == 2


def test_decode_legacy_document():
    order = decode_order(LEGACY_DOC)

    assert order.order_id == "ORD-1690000000000-ABC123"
    assert order.payment_method is PaymentMethod.ONLINE
    assert order.status is OrderStatus.CONFIRMED
    assert order.payment_status is PaymentStatus.COMPLETED
    assert (order.summary.subtotal, order.summary.tax, order.summary.shipping, order.summary.total) == (300, 54, 50, 404)
    assert order.gateway_order_id == "order_legacy"
    assert order.gateway_payment_id == "pay_legacy"
    assert order.payment_error == "Card declined"
    assert order.customer.email == "ravi@example.com"
    assert order.address.street == "4 Park St"
    assert order.address.postal_code == "700016"
    assert order.items[0].product_id == "P9"
    assert order.created_at.year == 2023


def test_legacy_cod_and_missing_total():
    doc = dict(LEGACY_DOC, paymentMethod="cod", paymentStatus="pending_cod")
    del doc["totalAmount"]
    order = decode_order(doc)
    assert order.payment_method is PaymentMethod.COD
    assert order.payment_status is PaymentStatus.PENDING_COD
    assert order.summary.total == 404


def test_canonical_document_round_trips():
    order = decode_order(LEGACY_DOC)
    doc = encode_order(order)

    assert doc["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert doc["summary"] == {"subtotal": 300, "tax": 54, "shipping": 50, "total": 404}
    assert doc["paymentMethod"] == "online"
    assert doc["address"]["postalCode"] == "700016"
    assert decode_order(doc) == order


def test_document_without_id_is_rejected():
    with pytest.raises(ValueError, match="INVALID_ORDER_DOCUMENT"):
        decode_order({"items": []})
