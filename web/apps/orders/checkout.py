"""Checkout flow: the three-step wizard that drives the payment orchestrator.

The flow walks address → payment method → review, then places the order.
Its only state is the local selection (address, method, processing flag)
plus the order currently awaiting the gateway. The cart is read through a
``CartStore`` handed to the constructor, so the same flow runs against the
Django session in production and an in-memory store in tests.

Every step ends in a ``FlowOutcome``; infrastructure failures are converted
to a user-facing message here and never escape to the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol

from .domain import (
    CartLine,
    Customer,
    GatewayIntent,
    GatewayUnavailable,
    Order,
    OrderNotFound,
    PaymentMethod,
    PaymentOrchestrator,
    VerificationOutcome,
)
from .pricing import PricingBreakdown, PricingPolicy

logger = logging.getLogger(__name__)

MESSAGES = {
    "EMPTY_CART": "Your cart is empty",
    "ADDRESS_REQUIRED": "Please select a delivery address",
    "ADDRESS_NOT_FOUND": "Address not found",
    "INVALID_PAYMENT_METHOD": "Please choose a payment method",
    "INVALID_QUANTITY": "Invalid quantity in cart",
    "INVALID_PRICE": "Invalid price in cart",
    "ORDER_CREATE_FAILED": "Failed to place order",
    "PAYMENT_INIT_FAILED": "Payment initialization failed",
    "VERIFICATION_FAILED": "Payment verification failed",
    "PAYMENT_FAILED": "Payment failed",
    "PAYMENT_CANCELLED": "Payment cancelled",
    "NO_PENDING_PAYMENT": "No payment in progress",
    "ORDER_IN_PROGRESS": "Your order is already being placed",
    "NOT_FOUND": "Order not found",
}


# ---- Cart store ----
class CartStore(Protocol):
    """Shared cart state: read, replace, and observe."""

    def get(self) -> List[CartLine]:
        ...

    def set(self, lines: List[CartLine]) -> None:
        ...

    def subscribe(self, callback: Callable[[List[CartLine]], None]) -> Callable[[], None]:
        """Register ``callback`` for every change; returns an unsubscribe function."""
        ...


class _Observable:
    def __init__(self):
        self._subscribers: list = []

    def subscribe(self, callback):
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback) if callback in self._subscribers else None

    def _publish(self, lines):
        for cb in list(self._subscribers):
            cb(list(lines))


class InMemoryCartStore(_Observable):
    def __init__(self, lines: Optional[List[CartLine]] = None):
        super().__init__()
        self._lines = list(lines or [])

    def get(self) -> List[CartLine]:
        return list(self._lines)

    def set(self, lines: List[CartLine]) -> None:
        self._lines = list(lines)
        self._publish(self._lines)

    def clear(self) -> None:
        self.set([])


class SessionCartStore(_Observable):
    """Cart kept in the Django session under ``SESSION_KEY``."""

    SESSION_KEY = "cart"

    def __init__(self, session):
        super().__init__()
        self.session = session

    def get(self) -> List[CartLine]:
        return [CartLine(**raw) for raw in self.session.get(self.SESSION_KEY, [])]

    def set(self, lines: List[CartLine]) -> None:
        self.session[self.SESSION_KEY] = [
            {
                "product_id": l.product_id,
                "name": l.name,
                "price": l.price,
                "quantity": l.quantity,
                "image": l.image,
                "category": l.category,
            }
            for l in lines
        ]
        self.session.modified = True
        self._publish(lines)

    def clear(self) -> None:
        self.set([])


# ---- Flow ----
class CheckoutStep(str, Enum):
    ADDRESS = "address"
    PAYMENT = "payment"
    REVIEW = "review"
    DONE = "done"


STEP_ORDER = [CheckoutStep.ADDRESS, CheckoutStep.PAYMENT, CheckoutStep.REVIEW]


@dataclass
class FlowOutcome:
    ok: bool
    code: Optional[str] = None
    message: Optional[str] = None
    order_id: Optional[str] = None
    order: Optional[Order] = None
    intent: Optional[GatewayIntent] = None
    redirect: Optional[str] = None


def _failure(code: str, order_id: Optional[str] = None) -> FlowOutcome:
    return FlowOutcome(ok=False, code=code, message=MESSAGES.get(code, code), order_id=order_id)


class CheckoutFlow:
    """Address → payment → review wizard for one customer session.

    Args:
        orchestrator: Drives order creation and payment settlement.
        cart: Store the cart is read from and cleared through.
        addresses: Object with ``get(user_id, address_id)`` and
            ``default_for(user_id)`` (``AddressBook``).
        user_id: Customer placing the order.
        policy: Pricing policy, fetched once for the session.
        customer: Contact details, defaults to the address contact.
    """

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        cart: CartStore,
        addresses,
        user_id: str,
        policy: PricingPolicy,
        customer: Optional[Customer] = None,
    ):
        self.orchestrator = orchestrator
        self.cart = cart
        self.addresses = addresses
        self.user_id = user_id
        self.policy = policy
        self.customer = customer

        self.step = CheckoutStep.ADDRESS
        self.payment_method = PaymentMethod.ONLINE
        self.processing = False
        self.pending_order_id: Optional[str] = None
        self.error: Optional[str] = None

        default = addresses.default_for(user_id)
        self.selected_address_id: Optional[str] = default.id if default else None

    # -- wizard --
    @property
    def totals(self) -> PricingBreakdown:
        return self.policy.price(self.cart.get())

    @property
    def can_place_order(self) -> bool:
        return not self.processing and bool(self.cart.get()) and bool(self.selected_address_id)

    def select_address(self, address_id: Optional[str]) -> FlowOutcome:
        try:
            self.addresses.get(self.user_id, address_id)
        except ValueError as e:
            return self._fail(str(e))
        self.selected_address_id = str(address_id)
        self.step = CheckoutStep.PAYMENT
        return FlowOutcome(ok=True)

    def choose_payment(self, method: str) -> FlowOutcome:
        try:
            self.payment_method = PaymentMethod.parse(method)
        except ValueError as e:
            return self._fail(str(e))
        self.step = CheckoutStep.REVIEW
        return FlowOutcome(ok=True)

    def back(self) -> None:
        if self.step in STEP_ORDER and self.step is not CheckoutStep.ADDRESS:
            self.step = STEP_ORDER[STEP_ORDER.index(self.step) - 1]

    # -- placement --
    def place_order(self) -> FlowOutcome:
        """Place the order for the current cart and selection.

        COD orders finish here: the cart is cleared and the outcome carries
        the confirmation redirect. Online orders return the gateway intent;
        the flow then waits for one of the ``on_gateway_*`` callbacks with
        ``processing`` still set.
        """
        if self.processing:
            return _failure("ORDER_IN_PROGRESS")
        lines = self.cart.get()
        if not self.selected_address_id:
            return self._fail("ADDRESS_REQUIRED")
        if not lines:
            return self._fail("EMPTY_CART")

        self.processing = True
        self.error = None
        self.pending_order_id = None
        try:
            address = self.addresses.get(self.user_id, self.selected_address_id)
            order, intent = self.orchestrator.place_order(
                self.user_id, lines, address, self.payment_method, self.policy, self.customer
            )
        except ValueError as e:
            return self._fail(str(e))
        except GatewayUnavailable as e:
            logger.warning("payment initialization failed", extra={"order_id": getattr(e, "order_id", None)})
            return self._fail("PAYMENT_INIT_FAILED", order_id=getattr(e, "order_id", None))
        except Exception:
            logger.exception("order placement failed", extra={"user_id": self.user_id})
            return self._fail("ORDER_CREATE_FAILED")

        if intent is None:
            return self._complete(order)

        self.pending_order_id = order.order_id
        return FlowOutcome(ok=True, order_id=order.order_id, order=order, intent=intent)

    # -- gateway callbacks --
    def on_gateway_success(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> FlowOutcome:
        if not self.pending_order_id:
            return _failure("NO_PENDING_PAYMENT")
        try:
            result = self.orchestrator.verify_and_confirm(
                self.pending_order_id, gateway_order_id, gateway_payment_id, signature
            )
        except OrderNotFound:
            return self._fail("NOT_FOUND")
        except Exception:
            logger.exception("payment verification errored", extra={"order_id": self.pending_order_id})
            return self._fail("VERIFICATION_FAILED", order_id=self.pending_order_id)

        if result is not VerificationOutcome.CONFIRMED:
            return self._fail("VERIFICATION_FAILED", order_id=self.pending_order_id)
        return self._complete(self.orchestrator.ledger.get(self.pending_order_id))

    def on_gateway_failure(self, error_description: Optional[str] = None) -> FlowOutcome:
        """Record a failed payment. The cart is kept so the customer can retry."""
        return self._close(lambda oid: self.orchestrator.record_gateway_failure(oid, error_description),
                           "PAYMENT_FAILED", error_description)

    def on_gateway_dismiss(self) -> FlowOutcome:
        """Record a dismissed gateway window and re-enable placing the order."""
        return self._close(self.orchestrator.record_gateway_dismissal, "PAYMENT_CANCELLED")

    def _close(self, record, code: str, message: Optional[str] = None) -> FlowOutcome:
        order_id = self.pending_order_id
        if not order_id:
            return _failure("NO_PENDING_PAYMENT")
        try:
            order = record(order_id)
        except Exception:
            logger.exception("could not record gateway outcome", extra={"order_id": order_id})
            order = None
        self.pending_order_id = None
        outcome = self._fail(code, order_id=order_id)
        outcome.order = order
        if message:
            outcome.message = self.error = message
        return outcome

    # -- helpers --
    def _complete(self, order: Order) -> FlowOutcome:
        self.cart.set([])
        self.processing = False
        self.pending_order_id = None
        self.step = CheckoutStep.DONE
        return FlowOutcome(
            ok=True,
            order_id=order.order_id,
            order=order,
            redirect=f"/order-confirmation/{order.order_id}",
        )

    def _fail(self, code: str, order_id: Optional[str] = None) -> FlowOutcome:
        self.processing = False
        outcome = _failure(code, order_id)
        self.error = outcome.message
        return outcome
