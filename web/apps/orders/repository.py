"""Repository layer for orders and saved addresses.

``OrderRepository`` is the order ledger: it persists ``Order`` domain
objects with the Django ORM and reads them back through the document
decoder, so legacy rows and current rows come out as the same type.
Updates are merges: only the named columns are written, and two writers
touching different fields of the same order both win. Orchestrator
transitions pass ``expect_status`` to turn the write into a conditional
one on the status column.

``AddressBook`` looks up and stores per-customer delivery addresses.
"""

from typing import Optional

from django.utils import timezone

from .documents import decode_order, encode_address, encode_item
from .domain import Address, Order, OrderNotFound, OrderStatus, StaleOrderState
from .models import AddressModel, OrderModel

# Written once at creation; never part of a merge update.
IMMUTABLE_FIELDS = frozenset({"order_id", "user_id", "items", "address", "summary", "customer", "payment_method", "created_at"})
MUTABLE_FIELDS = frozenset({
    "status",
    "payment_status",
    "gateway_order_id",
    "gateway_payment_id",
    "payment_error",
    "cancellation_reason",
})


def _value(v):
    return v.value if hasattr(v, "value") else v


def _row_to_document(obj: OrderModel) -> dict:
    return {
        "schemaVersion": 2,
        "orderId": obj.order_id,
        "userId": obj.user_id,
        "customer": obj.customer,
        "items": obj.items,
        "address": obj.address,
        "paymentMethod": obj.payment_method,
        "summary": obj.summary,
        "status": obj.status,
        "paymentStatus": obj.payment_status,
        "gatewayOrderId": obj.gateway_order_id,
        "gatewayPaymentId": obj.gateway_payment_id,
        "paymentError": obj.payment_error,
        "cancellationReason": obj.cancellation_reason,
        "createdAt": obj.created_at,
        "updatedAt": obj.updated_at,
    }


class OrderRepository:
    """Order ledger backed by the ``orders`` table."""

    def create(self, order: Order) -> str:
        """Persist a new order in a single INSERT.

        Args:
            order: Domain order; its ``created_at``/``updated_at`` are
                filled in when missing.

        Returns:
            The order id.
        """
        now = timezone.now()
        order.created_at = order.created_at or now
        order.updated_at = order.updated_at or now
        OrderModel.objects.create(
            order_id=order.order_id,
            user_id=order.user_id,
            customer={
                "name": order.customer.name,
                "phone": order.customer.phone,
                "email": order.customer.email,
            },
            items=[encode_item(i) for i in order.items],
            address=encode_address(order.address),
            summary=order.summary.as_dict(),
            payment_method=order.payment_method.value,
            status=order.status.value,
            payment_status=order.payment_status.value,
            gateway_order_id=order.gateway_order_id,
            gateway_payment_id=order.gateway_payment_id,
            payment_error=order.payment_error,
            cancellation_reason=order.cancellation_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
        return order.order_id

    def import_document(self, doc: dict) -> Order:
        """Decode a (possibly legacy) order document and store it."""
        order = decode_order(doc)
        self.create(order)
        return order

    def update(self, order_id: str, expect_status: Optional[OrderStatus] = None, **fields) -> Order:
        """Merge ``fields`` into the stored order.

        Raises:
            ValueError: 'IMMUTABLE_FIELD' or 'UNKNOWN_FIELD' for fields that
                cannot be merged.
            OrderNotFound: If no row has ``order_id``.
            StaleOrderState: If ``expect_status`` is given and the stored
                status differs.
        """
        for name in fields:
            if name in IMMUTABLE_FIELDS:
                raise ValueError("IMMUTABLE_FIELD")
            if name not in MUTABLE_FIELDS:
                raise ValueError("UNKNOWN_FIELD")

        values = {k: _value(v) for k, v in fields.items()}
        values["updated_at"] = timezone.now()

        qs = OrderModel.objects.filter(order_id=order_id)
        if expect_status is not None:
            qs = qs.filter(status=_value(expect_status))
        if qs.update(**values) == 0:
            if not OrderModel.objects.filter(order_id=order_id).exists():
                raise OrderNotFound(order_id)
            raise StaleOrderState(order_id)
        return self.get(order_id)

    def get(self, order_id: str) -> Order:
        try:
            obj = OrderModel.objects.get(order_id=order_id)
        except OrderModel.DoesNotExist:
            raise OrderNotFound(order_id) from None
        return decode_order(_row_to_document(obj))

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        obj = OrderModel.objects.filter(gateway_order_id=gateway_order_id).first()
        return decode_order(_row_to_document(obj)) if obj else None

    def list_for_user(self, user_id: Optional[str] = None):
        """Return a queryset of rows, newest first, for pagination."""
        qs = OrderModel.objects.order_by("-created_at", "-order_id")
        if user_id:
            qs = qs.filter(user_id=user_id)
        return qs

    @staticmethod
    def to_order(obj: OrderModel) -> Order:
        return decode_order(_row_to_document(obj))


def _model_to_address(obj: AddressModel) -> Address:
    return Address(
        id=str(obj.pk),
        name=obj.name,
        phone=obj.phone,
        street=obj.street,
        city=obj.city,
        state=obj.state,
        postal_code=obj.postal_code,
        country=obj.country,
        address_type=obj.address_type,
    )


class AddressBook:
    """Saved delivery addresses, keyed by customer."""

    def list(self, user_id: str) -> list[tuple[Address, bool]]:
        """Return ``(address, is_default)`` pairs in creation order."""
        return [(_model_to_address(o), o.is_default) for o in AddressModel.objects.filter(user_id=user_id)]

    def add(self, user_id: str, address: Address) -> Address:
        """Store a new address; the customer's first address becomes the default."""
        is_first = not AddressModel.objects.filter(user_id=user_id).exists()
        obj = AddressModel.objects.create(
            user_id=user_id,
            name=address.name,
            phone=address.phone,
            street=address.street,
            city=address.city,
            state=address.state,
            postal_code=address.postal_code,
            country=address.country,
            address_type=address.address_type,
            is_default=is_first,
        )
        return _model_to_address(obj)

    def get(self, user_id: str, address_id: Optional[str]) -> Address:
        """Fetch one of the customer's addresses.

        Raises:
            ValueError: 'ADDRESS_REQUIRED' when no id is given,
                'ADDRESS_NOT_FOUND' when the id is unknown or belongs to
                another customer.
        """
        if not address_id:
            raise ValueError("ADDRESS_REQUIRED")
        try:
            obj = AddressModel.objects.get(pk=int(address_id), user_id=user_id)
        except (AddressModel.DoesNotExist, ValueError, TypeError):
            raise ValueError("ADDRESS_NOT_FOUND") from None
        return _model_to_address(obj)

    def default_for(self, user_id: str) -> Optional[Address]:
        """The default address, else the oldest one, else None."""
        qs = AddressModel.objects.filter(user_id=user_id)
        obj = qs.filter(is_default=True).first() or qs.first()
        return _model_to_address(obj) if obj else None
