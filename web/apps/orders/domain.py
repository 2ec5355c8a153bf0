"""Domain models, ports and the payment orchestrator for checkout orders.

This module contains the dataclasses that describe an order and its
snapshots, the status transition table, protocol definitions (ports) for the
order ledger, the payment gateway and the notification fan-out, and the
``PaymentOrchestrator`` that drives an order from review to a settled state.
It does not know about HTTP or the Django ORM.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Protocol

from .pricing import PricingBreakdown, PricingPolicy
from .signatures import verify_payment_signature

logger = logging.getLogger(__name__)

# Gateway amounts are expressed in minor units (paise).
MINOR_UNITS = 100


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of an order as seen by the customer and by operators."""

    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Settlement track, parallel to ``OrderStatus``."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING_COD = "pending_cod"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    COD = "cash_on_delivery"

    @classmethod
    def parse(cls, raw: str) -> "PaymentMethod":
        """Accept the canonical values plus the short aliases used by clients.

        Raises:
            ValueError: 'INVALID_PAYMENT_METHOD' for anything else.
        """
        aliases = {"cod": cls.COD, "razorpay": cls.ONLINE}
        key = (raw or "").strip().lower()
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ValueError("INVALID_PAYMENT_METHOD") from None


class OrderEvent(str, Enum):
    COD_PLACED = "cod_placed"
    INTENT_CREATED = "intent_created"
    GATEWAY_SUCCESS = "gateway_success"
    GATEWAY_FAILURE = "gateway_failure"
    GATEWAY_DISMISSED = "gateway_dismissed"
    OPERATOR_CANCEL = "operator_cancel"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class VerificationOutcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


# ---- Errors ----
class GatewayUnavailable(RuntimeError):
    """The payment gateway could not create an intent."""


class OrderNotFound(LookupError):
    """No order exists for the given id."""


class InvalidTransition(Exception):
    """The event is not allowed from the order's current status."""

    def __init__(self, status: OrderStatus, event: OrderEvent):
        super().__init__(f"{event.value} not allowed from {status.value}")
        self.status = status
        self.event = event


class StaleOrderState(Exception):
    """A conditional ledger update found the order in another status."""


# ---- Transition table ----
PRE_SHIPMENT = (
    OrderStatus.PENDING,
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.CONFIRMED,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.PAYMENT_CANCELLED,
)

# (from status, event) -> (to status, to payment status or None to keep it)
TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], tuple[OrderStatus, Optional[PaymentStatus]]] = {
    (OrderStatus.PENDING, OrderEvent.COD_PLACED): (OrderStatus.CONFIRMED, PaymentStatus.PENDING_COD),
    (OrderStatus.PENDING, OrderEvent.INTENT_CREATED): (OrderStatus.PENDING_PAYMENT, PaymentStatus.PENDING),
    (OrderStatus.PENDING_PAYMENT, OrderEvent.GATEWAY_SUCCESS): (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED),
    (OrderStatus.PENDING_PAYMENT, OrderEvent.GATEWAY_FAILURE): (OrderStatus.PAYMENT_FAILED, PaymentStatus.FAILED),
    (OrderStatus.PENDING_PAYMENT, OrderEvent.GATEWAY_DISMISSED): (OrderStatus.PAYMENT_CANCELLED, PaymentStatus.CANCELLED),
    # A verified capture settles the order even if the browser reported a
    # failure or a dismissal first.
    (OrderStatus.PAYMENT_FAILED, OrderEvent.GATEWAY_SUCCESS): (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED),
    (OrderStatus.PAYMENT_CANCELLED, OrderEvent.GATEWAY_SUCCESS): (OrderStatus.CONFIRMED, PaymentStatus.COMPLETED),
    (OrderStatus.CONFIRMED, OrderEvent.SHIPPED): (OrderStatus.SHIPPED, None),
    (OrderStatus.SHIPPED, OrderEvent.DELIVERED): (OrderStatus.DELIVERED, None),
    **{(s, OrderEvent.OPERATOR_CANCEL): (OrderStatus.CANCELLED, None) for s in PRE_SHIPMENT},
}


def transition(status: OrderStatus, event: OrderEvent) -> tuple[OrderStatus, Optional[PaymentStatus]]:
    """Look up the target state for ``event`` fired from ``status``.

    Raises:
        InvalidTransition: If the pair is not in ``TRANSITIONS``.
    """
    try:
        return TRANSITIONS[(OrderStatus(status), event)]
    except KeyError:
        raise InvalidTransition(OrderStatus(status), event) from None


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartLine:
    """A line of the live cart. Prices are whole currency units."""

    product_id: str
    name: str
    price: int
    quantity: int
    image: str = ""
    category: str = ""


@dataclass(frozen=True)
class OrderItem:
    """A line item snapshotted into an order at creation time."""

    product_id: str
    name: str
    price: int
    quantity: int
    image: str = ""
    category: str = ""

    @classmethod
    def from_cart_line(cls, line: CartLine) -> "OrderItem":
        return cls(
            product_id=line.product_id,
            name=line.name,
            price=line.price,
            quantity=line.quantity,
            image=line.image,
            category=line.category,
        )


@dataclass(frozen=True)
class Address:
    """Delivery address. Copied by value into every order that uses it."""

    name: str
    phone: str
    street: str
    city: str
    state: str
    postal_code: str
    country: str = "India"
    address_type: str = "home"
    id: Optional[str] = None


@dataclass(frozen=True)
class Customer:
    name: str = "Customer"
    phone: str = ""
    email: str = ""


@dataclass(frozen=True)
class GatewayIntent:
    """Provider-side intent. ``amount`` is in minor units."""

    id: str
    amount: int
    currency: str


@dataclass
class Order:
    """Container for order data.

    Attributes:
        order_id: Identifier minted before the first write.
        user_id: Customer reference.
        items: Snapshotted line items; never edited after creation.
        address: Snapshotted shipping address.
        customer: Contact details used by notifications.
        payment_method: ``online`` or ``cash_on_delivery``.
        summary: Pricing breakdown computed at creation.
        status: Current ``OrderStatus``.
        payment_status: Current ``PaymentStatus``.
        gateway_order_id: Intent id returned by the gateway.
        gateway_payment_id: Payment id confirmed by verification.
        payment_error: Provider error description after a failed payment.
        cancellation_reason: Operator-supplied reason after cancellation.
    """

    order_id: str
    user_id: str
    items: tuple[OrderItem, ...]
    address: Address
    payment_method: PaymentMethod
    summary: PricingBreakdown
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    customer: Customer = field(default_factory=Customer)
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    payment_error: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def new_order_id(now_ms: Optional[int] = None) -> str:
    """Mint an order id: ``ORD-<epoch millis>-<6 random base36 chars>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{now_ms}-{suffix}"


# ---- Ports (DIP) ----
class OrderLedgerPort(Protocol):
    """Durable store for orders; the single source of truth for status."""

    def create(self, order: Order) -> str:
        raise NotImplementedError()

    def update(self, order_id: str, expect_status: Optional[OrderStatus] = None, **fields) -> Order:
        """Merge ``fields`` into the stored order and return the result.

        When ``expect_status`` is given the write only happens if the stored
        status still equals it; otherwise ``StaleOrderState`` is raised.
        """
        raise NotImplementedError()

    def get(self, order_id: str) -> Order:
        raise NotImplementedError()

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Hosted-checkout provider."""

    def create_intent(self, amount: int, currency: str, receipt: str, notes: dict) -> GatewayIntent:
        """Create a payment intent for ``amount`` minor units.

        Raises:
            GatewayUnavailable: If the provider cannot be reached or refuses.
        """
        raise NotImplementedError()


class OrderNotifierPort(Protocol):
    def order_confirmed(self, order: Order) -> None:
        """Announce a confirmed order. Must never raise."""
        raise NotImplementedError()


# ---- Domain service ----
class PaymentOrchestrator:
    """State machine coordinating order placement and payment settlement.

    COD orders are persisted directly as confirmed. Online orders are
    persisted as pending, moved to pending_payment once a gateway intent
    exists, and only confirmed after the gateway signature verifies.
    Notifications are handed to the notifier port after confirmation.
    """

    def __init__(
        self,
        ledger: OrderLedgerPort,
        gateway: PaymentGatewayPort,
        notifier: OrderNotifierPort,
        signing_secret: str,
        currency: str = "INR",
    ):
        """Initialize the orchestrator with its collaborators.

        Args:
            ledger: Order store.
            gateway: Provider used to create payment intents.
            notifier: Best-effort fan-out for confirmed orders.
            signing_secret: Gateway key secret used to verify signatures.
            currency: Currency sent to the gateway.
        """
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.signing_secret = signing_secret
        self.currency = currency

    # -- placement --
    def create_order(
        self,
        user_id: str,
        cart: Iterable[CartLine],
        address: Optional[Address],
        payment_method: PaymentMethod | str,
        policy: PricingPolicy,
        customer: Optional[Customer] = None,
    ) -> Order:
        """Validate the checkout, snapshot it into an order and persist it.

        A fresh order id is minted on every call, so retrying after a failed
        write cannot collide with an earlier attempt.

        Returns:
            The persisted ``Order``: confirmed/pending_cod for COD,
            pending/pending for online.

        Raises:
            ValueError: With one of the following codes:
                'EMPTY_CART' if the cart has no lines.
                'INVALID_QUANTITY' if a line quantity is below 1.
                'INVALID_PRICE' if a line price is negative.
                'ADDRESS_REQUIRED' if no address was selected.
                'INVALID_PAYMENT_METHOD' for an unknown method.
        """
        lines = list(cart)
        if not lines:
            raise ValueError("EMPTY_CART")
        for line in lines:
            if line.quantity < 1:
                raise ValueError("INVALID_QUANTITY")
            if line.price < 0:
                raise ValueError("INVALID_PRICE")
        if address is None:
            raise ValueError("ADDRESS_REQUIRED")
        if not isinstance(payment_method, PaymentMethod):
            payment_method = PaymentMethod.parse(payment_method)

        if customer is None:
            customer = Customer(name=address.name or "Customer", phone=address.phone)

        order = Order(
            order_id=new_order_id(),
            user_id=user_id,
            items=tuple(OrderItem.from_cart_line(line) for line in lines),
            address=replace(address),
            payment_method=payment_method,
            summary=policy.price(lines),
            customer=customer,
        )

        if payment_method is PaymentMethod.COD:
            order.status, order.payment_status = transition(order.status, OrderEvent.COD_PLACED)

        self.ledger.create(order)
        logger.info("order created", extra={
            "order_id": order.order_id,
            "payment_method": payment_method.value,
            "status": order.status.value,
            "total": order.summary.total,
        })

        if order.status is OrderStatus.CONFIRMED:
            self.notifier.order_confirmed(order)
        return order

    def request_gateway_intent(self, order_id: str, amount: Optional[int] = None) -> GatewayIntent:
        """Create a gateway intent for a pending online order.

        The intent is always sized to the stored order total. The order is
        moved to pending_payment with the intent id before this returns, so
        it can be found even if the browser never reports back.

        Args:
            order_id: Order to pay for.
            amount: Optional amount the client believes it owes, in whole
                units; must match the stored total.

        Returns:
            GatewayIntent: The provider intent (amount in minor units). A
            repeated request for an order already awaiting payment returns
            the existing intent.

        Raises:
            OrderNotFound: If the order does not exist.
            ValueError: 'AMOUNT_MISMATCH' when ``amount`` differs from the
                stored total; 'NOT_ONLINE_PAYMENT' for COD orders.
            InvalidTransition: If the order is no longer pending.
            GatewayUnavailable: If the provider call fails; the order stays
                pending.
        """
        order = self.ledger.get(order_id)
        total = order.summary.total
        if amount is not None and amount != total:
            raise ValueError("AMOUNT_MISMATCH")
        if order.payment_method is not PaymentMethod.ONLINE:
            raise ValueError("NOT_ONLINE_PAYMENT")

        if order.status is OrderStatus.PENDING_PAYMENT and order.gateway_order_id:
            return GatewayIntent(order.gateway_order_id, total * MINOR_UNITS, self.currency)

        status, payment_status = transition(order.status, OrderEvent.INTENT_CREATED)
        intent = self.gateway.create_intent(
            total * MINOR_UNITS, self.currency, receipt=order.order_id, notes={"orderId": order.order_id},
        )
        self.ledger.update(
            order_id,
            expect_status=order.status,
            status=status,
            payment_status=payment_status,
            gateway_order_id=intent.id,
        )
        logger.info("gateway intent created", extra={"order_id": order_id, "gateway_order_id": intent.id})
        return intent

    def place_order(
        self,
        user_id: str,
        cart: Iterable[CartLine],
        address: Optional[Address],
        payment_method: PaymentMethod | str,
        policy: PricingPolicy,
        customer: Optional[Customer] = None,
    ) -> tuple[Order, Optional[GatewayIntent]]:
        """Create the order and, for online payment, its gateway intent.

        Raises:
            GatewayUnavailable: The order exists (pending) but no intent
                could be created. ``exc.order_id`` carries its id.
        """
        order = self.create_order(user_id, cart, address, payment_method, policy, customer)
        if order.payment_method is PaymentMethod.COD:
            return order, None
        try:
            intent = self.request_gateway_intent(order.order_id)
        except GatewayUnavailable as exc:
            exc.order_id = order.order_id
            raise
        return self.ledger.get(order.order_id), intent

    # -- settlement --
    def verify_and_confirm(
        self, order_id: str, gateway_order_id: str, gateway_payment_id: str, signature: str
    ) -> VerificationOutcome:
        """Verify the gateway's checkout signature and confirm the order.

        Duplicate calls for an order already confirmed with the same ids are
        successful no-ops: nothing is written and nothing is re-announced.

        Returns:
            VerificationOutcome.CONFIRMED on success or replay;
            VerificationOutcome.VERIFICATION_FAILED when the signature does
            not match or does not belong to this order's intent. The order is
            not touched on failure.

        Raises:
            OrderNotFound: If the order does not exist.
        """
        if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature, self.signing_secret):
            logger.warning("payment signature mismatch", extra={
                "order_id": order_id, "gateway_order_id": gateway_order_id,
            })
            return VerificationOutcome.VERIFICATION_FAILED

        order = self.ledger.get(order_id)
        if order.gateway_order_id != gateway_order_id:
            logger.warning("signature belongs to another intent", extra={
                "order_id": order_id, "gateway_order_id": gateway_order_id,
            })
            return VerificationOutcome.VERIFICATION_FAILED

        return self._settle(order, gateway_payment_id)

    def confirm_captured_payment(self, order_id: str, gateway_order_id: str, gateway_payment_id: str) -> VerificationOutcome:
        """Confirm an order from an already-authenticated gateway capture event."""
        order = self.ledger.get(order_id)
        if order.gateway_order_id and order.gateway_order_id != gateway_order_id:
            logger.warning("captured payment for another intent", extra={
                "order_id": order_id, "gateway_order_id": gateway_order_id,
            })
            return VerificationOutcome.VERIFICATION_FAILED
        return self._settle(order, gateway_payment_id, gateway_order_id=gateway_order_id)

    def _settle(self, order: Order, gateway_payment_id: str, **extra) -> VerificationOutcome:
        if order.payment_status is PaymentStatus.COMPLETED:
            if order.gateway_payment_id != gateway_payment_id:
                logger.warning("order already settled by another payment", extra={
                    "order_id": order.order_id, "gateway_payment_id": gateway_payment_id,
                })
            return VerificationOutcome.CONFIRMED

        status, payment_status = transition(order.status, OrderEvent.GATEWAY_SUCCESS)
        try:
            updated = self.ledger.update(
                order.order_id,
                expect_status=order.status,
                status=status,
                payment_status=payment_status,
                gateway_payment_id=gateway_payment_id,
                payment_error=None,
                **extra,
            )
        except StaleOrderState:
            # Lost a race with a concurrent confirmation of the same order.
            current = self.ledger.get(order.order_id)
            if current.payment_status is PaymentStatus.COMPLETED:
                return VerificationOutcome.CONFIRMED
            raise

        logger.info("payment confirmed", extra={
            "order_id": order.order_id, "gateway_payment_id": gateway_payment_id,
        })
        self.notifier.order_confirmed(updated)
        return VerificationOutcome.CONFIRMED

    def record_gateway_failure(self, order_id: str, error_description: Optional[str] = None) -> Order:
        """Mark an order awaiting payment as failed.

        Late failure reports for orders that already left pending_payment are
        ignored and the stored order is returned unchanged.
        """
        return self._close_payment(order_id, OrderEvent.GATEWAY_FAILURE, payment_error=error_description or "Payment failed")

    def record_gateway_dismissal(self, order_id: str) -> Order:
        """Mark an order awaiting payment as cancelled by the customer."""
        return self._close_payment(order_id, OrderEvent.GATEWAY_DISMISSED)

    def _close_payment(self, order_id: str, event: OrderEvent, **fields) -> Order:
        order = self.ledger.get(order_id)
        if order.status is not OrderStatus.PENDING_PAYMENT:
            logger.info("ignoring late gateway callback", extra={
                "order_id": order_id, "event": event.value, "status": order.status.value,
            })
            return order
        status, payment_status = transition(order.status, event)
        try:
            updated = self.ledger.update(
                order_id, expect_status=order.status, status=status, payment_status=payment_status, **fields
            )
        except StaleOrderState:
            return self.ledger.get(order_id)
        logger.info("payment closed", extra={"order_id": order_id, "event": event.value})
        return updated

    # -- operator actions --
    def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Order:
        """Cancel an order that has not shipped yet.

        Raises:
            ValueError: 'CANNOT_CANCEL' once the order is shipped, delivered
                or already cancelled.
        """
        order = self.ledger.get(order_id)
        if order.status not in PRE_SHIPMENT:
            raise ValueError("CANNOT_CANCEL")
        status, _ = transition(order.status, OrderEvent.OPERATOR_CANCEL)
        updated = self.ledger.update(order_id, status=status, cancellation_reason=reason or "Order cancelled")
        logger.info("order cancelled", extra={"order_id": order_id})
        return updated

    def advance(self, order_id: str, event: OrderEvent) -> Order:
        """Apply a fulfilment event (shipped, delivered)."""
        order = self.ledger.get(order_id)
        status, _ = transition(order.status, event)
        return self.ledger.update(order_id, status=status)
