"""HTTP views for the checkout API.

Views are kept intentionally small: they validate requests (via Pydantic),
delegate to the checkout flow or the payment orchestrator obtained from
``providers``, and map domain outcomes to HTTP responses. Domain errors are
short upper-case codes returned as ``{"detail": CODE}``.

Idempotency: ``POST /api/orders/`` honours an optional ``Idempotency-Key``
header. The first request with a key is processed and its response stored;
retries with the same body get the stored response back with an
``Idempotent-Replay: true`` header. Reusing a key with another body returns
409.
"""

import json
import logging

from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .checkout import CheckoutFlow, FlowOutcome, SessionCartStore
from .documents import encode_address, encode_order
from .domain import (
    Address,
    Customer,
    GatewayUnavailable,
    InvalidTransition,
    OrderEvent,
    OrderNotFound,
    StaleOrderState,
    VerificationOutcome,
)
from .idempotency import claim_key, store_response
from .repository import OrderRepository
from .schemas import (
    AddressIn,
    CancelOrderDTO,
    CartIn,
    CreateIntentDTO,
    CreateOrderDTO,
    OrderReadDTO,
    PaymentFailedDTO,
    VerifyPaymentDTO,
)
from .signatures import verify_webhook_signature
from .webhooks import GatewayWebhookHandler

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "EMPTY_CART": 400,
    "ADDRESS_REQUIRED": 400,
    "INVALID_PAYMENT_METHOD": 400,
    "INVALID_QUANTITY": 400,
    "INVALID_PRICE": 400,
    "VERIFICATION_FAILED": 401,
    "INVALID_SIGNATURE": 401,
    "ADDRESS_NOT_FOUND": 404,
    "NOT_FOUND": 404,
    "CANNOT_CANCEL": 409,
    "INVALID_TRANSITION": 409,
    "ORDER_IN_PROGRESS": 409,
    "IDEMPOTENCY_CONFLICT": 409,
    "IDEMPOTENCY_IN_PROGRESS": 409,
    "AMOUNT_MISMATCH": 422,
    "NOT_ONLINE_PAYMENT": 422,
    "UNSUPPORTED_CURRENCY": 422,
    "ORDER_CREATE_FAILED": 503,
    "PAYMENT_INIT_FAILED": 503,
}


def error_response(code: str, **extra) -> Response:
    return Response({"detail": code, **extra}, status=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST))


def validation_error(e: ValidationError) -> Response:
    return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)


class ScopedAPIView(APIView):
    throttle_classes = [ScopedRateThrottle]


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(ScopedAPIView):
    """List orders, or place a new one through the checkout flow."""

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return super().get_throttles()

    def get(self, request):
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return error_response("INVALID_PAGINATION")

        qs = OrderRepository().list_for_user(request.GET.get("user_id"))
        p = Paginator(qs, max(page_size, 1))
        page_obj = p.get_page(page)

        results = []
        for o in page_obj.object_list:
            dto = OrderReadDTO(
                order_id=o.order_id,
                user_id=o.user_id,
                status=o.status,
                payment_status=o.payment_status,
                payment_method=o.payment_method,
                total=(o.summary or {}).get("total", 0),
                gateway_order_id=o.gateway_order_id,
            )
            results.append(dto.model_dump(by_alias=True, exclude_none=True))

        return Response({
            "count": p.count,
            "page": page_obj.number,
            "page_size": page_size,
            "results": results,
        })

    def post(self, request):
        """Place an order.

        Returns:
            Response: One of the following responses.
            - 201 with the order summary (and the gateway intent for online
              payment) when the order is placed.
            - replay of the stored response for a repeated Idempotency-Key.
            - 400 for schema errors, empty cart, missing address.
            - 404 when the address does not belong to the customer.
            - 409 for idempotency conflicts.
            - 503 with ORDER_CREATE_FAILED or PAYMENT_INIT_FAILED; in the
              latter case the pending order id is included.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)

        # 2) Idempotency
        rec = None
        if idem_key:
            try:
                replay, rec = claim_key(idem_key, request.data)
            except ValueError as e:
                return error_response(str(e))
            if replay:
                if not rec.response_status:
                    return error_response("IDEMPOTENCY_IN_PROGRESS")
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Checkout flow
        cart = SessionCartStore(request.session)
        if dto.items is not None:
            cart.set([i.to_line() for i in dto.items])

        customer = None
        if dto.customer and (dto.customer.name or dto.customer.phone or dto.customer.email):
            customer = Customer(
                name=dto.customer.name or "Customer",
                phone=dto.customer.phone,
                email=dto.customer.email,
            )

        flow = CheckoutFlow(
            providers.get_orchestrator(),
            cart,
            providers.get_address_book(),
            dto.user_id,
            providers.get_policy(),
            customer,
        )
        outcome = flow.select_address(dto.address_id) if dto.address_id else FlowOutcome(ok=True)
        if outcome.ok:
            outcome = flow.choose_payment(dto.payment_method)
        if outcome.ok:
            outcome = flow.place_order()

        # 4) Response
        if outcome.ok:
            status_code, body = status.HTTP_201_CREATED, self._placed_body(outcome)
        else:
            body = {"detail": outcome.code, "message": outcome.message}
            if outcome.order_id:
                body["orderId"] = outcome.order_id
            status_code = ERROR_STATUS.get(outcome.code, status.HTTP_400_BAD_REQUEST)

        if rec:
            store_response(rec, status_code, body, order_id=outcome.order_id)
        return Response(body, status=status_code)

    @staticmethod
    def _placed_body(outcome: FlowOutcome) -> dict:
        order = outcome.order
        body = {
            "orderId": order.order_id,
            "status": order.status.value,
            "paymentStatus": order.payment_status.value,
            "paymentMethod": order.payment_method.value,
            "summary": order.summary.as_dict(),
        }
        if outcome.intent is not None:
            body["gatewayOrder"] = {
                "id": outcome.intent.id,
                "amount": outcome.intent.amount,
                "currency": outcome.intent.currency,
                "keyId": settings.GATEWAY_KEY_ID,
            }
        if outcome.redirect:
            body["redirect"] = outcome.redirect
        return body


class RetrieveOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, order_id: str):
        try:
            order = OrderRepository().get(order_id)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        return Response(encode_order(order))


class CancelOrderView(ScopedAPIView):
    throttle_scope = "orders_admin"

    def post(self, request, order_id: str):
        try:
            dto = CancelOrderDTO.model_validate(request.data or {})
        except ValidationError as e:
            return validation_error(e)
        try:
            order = providers.get_orchestrator().cancel_order(order_id, dto.reason)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        except ValueError as e:
            return error_response(str(e))
        return Response(encode_order(order))


class AdvanceOrderView(ScopedAPIView):
    """Operator fulfilment transitions: ``ship`` and ``deliver``."""

    throttle_scope = "orders_admin"
    EVENTS = {"ship": OrderEvent.SHIPPED, "deliver": OrderEvent.DELIVERED}

    def post(self, request, order_id: str, action: str):
        event = self.EVENTS.get(action)
        if event is None:
            return error_response("NOT_FOUND")
        try:
            order = providers.get_orchestrator().advance(order_id, event)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        except (InvalidTransition, StaleOrderState):
            return error_response("INVALID_TRANSITION")
        return Response(encode_order(order))


class PaymentFailedView(ScopedAPIView):
    """Browser callback: the gateway reported a failed payment."""

    throttle_scope = "payments"

    def post(self, request, order_id: str):
        try:
            dto = PaymentFailedDTO.model_validate(request.data or {})
        except ValidationError as e:
            return validation_error(e)
        try:
            order = providers.get_orchestrator().record_gateway_failure(order_id, dto.description)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        return Response(encode_order(order))


class PaymentDismissedView(ScopedAPIView):
    """Browser callback: the customer closed the gateway window."""

    throttle_scope = "payments"

    def post(self, request, order_id: str):
        try:
            order = providers.get_orchestrator().record_gateway_dismissal(order_id)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        return Response(encode_order(order))


class CreateIntentView(ScopedAPIView):
    """Create (or return the existing) gateway intent for a pending order."""

    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = CreateIntentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)
        if dto.currency != getattr(settings, "GATEWAY_CURRENCY", "INR"):
            return error_response("UNSUPPORTED_CURRENCY")

        try:
            intent = providers.get_orchestrator().request_gateway_intent(dto.order_id, dto.amount)
        except OrderNotFound:
            return error_response("NOT_FOUND")
        except (InvalidTransition, StaleOrderState):
            return error_response("INVALID_TRANSITION")
        except GatewayUnavailable:
            return error_response("PAYMENT_INIT_FAILED", orderId=dto.order_id)
        except ValueError as e:
            return error_response(str(e))

        return Response({
            "id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "receipt": dto.order_id,
            "keyId": settings.GATEWAY_KEY_ID,
        })


class VerifyPaymentView(ScopedAPIView):
    """Server-side verification of the gateway's success callback."""

    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = VerifyPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)

        try:
            result = providers.get_orchestrator().verify_and_confirm(
                dto.order_id, dto.gateway_order_id, dto.gateway_payment_id, dto.signature
            )
        except OrderNotFound:
            return error_response("NOT_FOUND")
        except (InvalidTransition, StaleOrderState):
            return error_response("INVALID_TRANSITION")

        if result is not VerificationOutcome.CONFIRMED:
            return error_response("VERIFICATION_FAILED")

        SessionCartStore(request.session).clear()
        return Response({"success": True, "orderId": dto.order_id, "status": "confirmed"})


class GatewayWebhookView(APIView):
    """Authenticated gateway webhook deliveries."""

    def post(self, request):
        # the signature covers the raw body, so read it before request.data
        raw = request.body
        signature = request.headers.get("X-Razorpay-Signature")
        if not verify_webhook_signature(raw, signature, getattr(settings, "GATEWAY_WEBHOOK_SECRET", "")):
            logger.warning("rejected gateway webhook", extra={"has_signature": bool(signature)})
            return error_response("INVALID_SIGNATURE")
        try:
            event = json.loads(raw)
        except ValueError:
            event = None
        if not isinstance(event, dict):
            return error_response("INVALID_PAYLOAD")

        result = GatewayWebhookHandler(providers.get_orchestrator()).handle(event)
        return Response({"success": True, "result": result})


class CartView(APIView):
    """The session cart the checkout flow reads from."""

    def get(self, request):
        return Response(self._body(SessionCartStore(request.session)))

    def put(self, request):
        try:
            dto = CartIn.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)
        cart = SessionCartStore(request.session)
        cart.set([i.to_line() for i in dto.items])
        return Response(self._body(cart))

    def delete(self, request):
        SessionCartStore(request.session).clear()
        return Response(status=status.HTTP_204_NO_CONTENT)

    @staticmethod
    def _body(cart: SessionCartStore) -> dict:
        lines = cart.get()
        return {
            "items": [
                {"productId": l.product_id, "name": l.name, "price": l.price, "quantity": l.quantity,
                 "image": l.image, "category": l.category}
                for l in lines
            ],
            "summary": providers.get_policy().price(lines).as_dict(),
        }


class AddressCollectionView(ScopedAPIView):
    throttle_scope = "addresses"

    def get(self, request, user_id: str):
        book = providers.get_address_book()
        return Response([
            {**encode_address(a), "isDefault": is_default} for a, is_default in book.list(user_id)
        ])

    def post(self, request, user_id: str):
        try:
            dto = AddressIn.model_validate(request.data)
        except ValidationError as e:
            return validation_error(e)
        saved = providers.get_address_book().add(user_id, Address(**dto.model_dump()))
        return Response(encode_address(saved), status=status.HTTP_201_CREATED)
