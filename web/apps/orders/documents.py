"""Order document codec.

Orders travel as camelCase JSON documents (API responses, idempotent replay
bodies, imports from the previous storefront). ``encode_order`` produces the
canonical shape; ``decode_order`` maps both the canonical shape and the
legacy shapes written by older clients onto the ``Order`` dataclass, so the
rest of the code only ever sees one schema.

Legacy shapes handled (schema version 1):

- totals at the top level (``total``/``totalAmount``, ``subtotal``,
  ``tax``/``taxAmount``, ``shippingCost``/``shipping``) instead of
  ``summary``;
- ``orderStatus`` instead of ``status``;
- ``razorpayOrderId``/``paymentId`` instead of the gateway fields;
- ``paymentMethod: "razorpay"`` or ``"cod"``;
- ``postalCode``/``pincode`` in the address, ``customerInfo`` for contact.
"""

from datetime import datetime
from typing import Any, Optional

from django.utils.dateparse import parse_datetime

from .domain import Address, Customer, Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from .pricing import PricingBreakdown

CURRENT_SCHEMA_VERSION = 2


def _first(doc: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = doc.get(key)
        if value is not None:
            return value
    return default


def _as_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(round(float(value)))


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return parse_datetime(str(value))


def schema_version(doc: dict) -> int:
    """Guess the schema version of a stored order document."""
    if "schemaVersion" in doc:
        return int(doc["schemaVersion"])
    if isinstance(doc.get("summary"), dict) and "status" in doc:
        return CURRENT_SCHEMA_VERSION
    return 1


# ---- encode ----
def encode_address(address: Address) -> dict:
    return {
        "id": address.id,
        "name": address.name,
        "phone": address.phone,
        "street": address.street,
        "city": address.city,
        "state": address.state,
        "postalCode": address.postal_code,
        "country": address.country,
        "addressType": address.address_type,
    }


def encode_item(item: OrderItem) -> dict:
    return {
        "productId": item.product_id,
        "name": item.name,
        "price": item.price,
        "quantity": item.quantity,
        "image": item.image,
        "category": item.category,
    }


def encode_order(order: Order) -> dict:
    """Render an order as the canonical camelCase document."""
    return {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "orderId": order.order_id,
        "userId": order.user_id,
        "customer": {
            "name": order.customer.name,
            "phone": order.customer.phone,
            "email": order.customer.email,
        },
        "items": [encode_item(i) for i in order.items],
        "address": encode_address(order.address),
        "paymentMethod": order.payment_method.value,
        "summary": order.summary.as_dict(),
        "status": order.status.value,
        "paymentStatus": order.payment_status.value,
        "gatewayOrderId": order.gateway_order_id,
        "gatewayPaymentId": order.gateway_payment_id,
        "paymentError": order.payment_error,
        "cancellationReason": order.cancellation_reason,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }


# ---- decode ----
def decode_address(doc: dict) -> Address:
    return Address(
        id=doc.get("id"),
        name=doc.get("name", ""),
        phone=doc.get("phone", ""),
        street=_first(doc, "street", "address", default=""),
        city=doc.get("city", ""),
        state=doc.get("state", ""),
        postal_code=str(_first(doc, "postalCode", "postal_code", "pincode", default="")),
        country=doc.get("country") or "India",
        address_type=_first(doc, "addressType", "address_type", default="home"),
    )


def decode_item(doc: dict) -> OrderItem:
    return OrderItem(
        product_id=str(_first(doc, "productId", "product_id", "id", default="")),
        name=doc.get("name", ""),
        price=_as_int(doc.get("price")),
        quantity=int(doc.get("quantity", 1)),
        image=doc.get("image") or "",
        category=doc.get("category") or "",
    )


def _decode_summary(doc: dict) -> PricingBreakdown:
    summary = doc.get("summary")
    if isinstance(summary, dict):
        src = summary
        tax_keys, shipping_keys, total_keys = ("tax",), ("shipping",), ("total",)
    else:
        src = doc
        tax_keys = ("tax", "taxAmount")
        shipping_keys = ("shippingCost", "shipping")
        total_keys = ("total", "totalAmount")

    subtotal = _as_int(src.get("subtotal"))
    tax = _as_int(_first(src, *tax_keys))
    shipping = _as_int(_first(src, *shipping_keys))
    total = _first(src, *total_keys)
    total = _as_int(total) if total is not None else subtotal + tax + shipping
    return PricingBreakdown(subtotal=subtotal, tax=tax, shipping=shipping, total=total)


def _decode_customer(doc: dict, address: Address) -> Customer:
    info = _first(doc, "customer", "customerInfo", default={}) or {}
    return Customer(
        name=info.get("name") or address.name or "Customer",
        phone=info.get("phone") or address.phone or "",
        email=info.get("email") or "",
    )


def _decode_payment_error(value: Any) -> Optional[str]:
    # v1 webhook writes stored the provider error object
    if isinstance(value, dict):
        return value.get("description") or value.get("reason")
    return value


def decode_order(doc: dict) -> Order:
    """Map a canonical or legacy order document onto ``Order``.

    Raises:
        ValueError: 'INVALID_ORDER_DOCUMENT' when the document has no id.
    """
    order_id = _first(doc, "orderId", "order_id", "id")
    if not order_id:
        raise ValueError("INVALID_ORDER_DOCUMENT")

    address = decode_address(doc.get("address") or {})
    legacy = schema_version(doc) < CURRENT_SCHEMA_VERSION

    status = _first(doc, "status", "orderStatus", default=OrderStatus.PENDING.value)
    payment_status = doc.get("paymentStatus") or PaymentStatus.PENDING.value
    if legacy and payment_status == "verified":
        payment_status = PaymentStatus.COMPLETED.value

    return Order(
        order_id=str(order_id),
        user_id=str(_first(doc, "userId", "user_id", default="guest")),
        items=tuple(decode_item(i) for i in doc.get("items") or []),
        address=address,
        customer=_decode_customer(doc, address),
        payment_method=PaymentMethod.parse(_first(doc, "paymentMethod", "payment_method", "payment", default="")),
        summary=_decode_summary(doc),
        status=OrderStatus(status),
        payment_status=PaymentStatus(payment_status),
        gateway_order_id=_first(doc, "gatewayOrderId", "razorpayOrderId"),
        gateway_payment_id=_first(doc, "gatewayPaymentId", "paymentId"),
        payment_error=_decode_payment_error(doc.get("paymentError")),
        cancellation_reason=_first(doc, "cancellationReason"),
        created_at=_as_datetime(doc.get("createdAt")),
        updated_at=_as_datetime(doc.get("updatedAt")),
    )
