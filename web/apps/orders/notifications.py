"""Best-effort notifications for confirmed orders.

When an order reaches a confirmed state the fan-out sends:

- a customer-facing order summary to the business chat line (WhatsApp Cloud
  API text message), and
- a structured embed to the team alert webhook (Discord).

Both are fire-and-forget. Each send runs on a dispatcher with its own error
boundary: failures are logged and never reach the caller, so they can
neither block nor undo a confirmation. There is no retry and no dead-letter
queue.
"""

import contextvars
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Iterable, Optional, Protocol
from urllib.parse import quote

import httpx
from django.conf import settings

from .domain import Order, OrderNotifierPort, PaymentMethod
from .http_adapters import request_headers

logger = logging.getLogger(__name__)

WHATSAPP_API_URL = "https://graph.facebook.com/v18.0"
DISCORD_EMBED_COLOR = 7506394


def build_notification(order: Order) -> dict:
    """Flatten an order into the payload shared by all channels."""
    a = order.address
    return {
        "orderId": order.order_id,
        "userId": order.user_id,
        "customerName": order.customer.name,
        "customerPhone": order.customer.phone,
        "customerEmail": order.customer.email,
        "items": [{"name": i.name, "quantity": i.quantity, "price": i.price} for i in order.items],
        "subtotal": order.summary.subtotal,
        "tax": order.summary.tax,
        "shipping": order.summary.shipping,
        "total": order.summary.total,
        "paymentMethod": order.payment_method.value,
        "address": {
            "name": a.name,
            "street": a.street,
            "city": a.city,
            "state": a.state,
            "postalCode": a.postal_code,
            "country": a.country,
        },
    }


def format_amount(amount: int) -> str:
    return f"₹{amount:,}"


# ---- Channels ----
class Channel(Protocol):
    name: str

    def send(self, payload: dict) -> None:
        """Deliver ``payload``. May raise; the dispatcher contains it."""
        ...


def order_message(payload: dict) -> str:
    """Plain-text order summary for the chat line."""
    lines = [
        "*NEW ORDER RECEIVED*",
        f"Order ID: {payload['orderId']}",
        "",
        "*Customer*",
        f"Name: {payload['customerName']}",
        f"Phone: {payload['customerPhone']}",
    ]
    if payload.get("customerEmail"):
        lines.append(f"Email: {payload['customerEmail']}")

    lines += ["", "*Items*"]
    for n, it in enumerate(payload["items"], start=1):
        lines.append(f"{n}. {it['name']} x{it['quantity']} - {format_amount(it['price'] * it['quantity'])}")

    shipping = payload["shipping"]
    lines += [
        "",
        "*Summary*",
        f"Subtotal: {format_amount(payload['subtotal'])}",
        f"Tax: {format_amount(payload['tax'])}",
        f"Shipping: {format_amount(shipping) if shipping else 'FREE'}",
        f"*Total: {format_amount(payload['total'])}*",
        "Payment: " + ("Cash on Delivery" if payload["paymentMethod"] == PaymentMethod.COD.value else "Online Payment"),
    ]

    addr = payload["address"]
    where = ", ".join(p for p in (addr["street"], addr["city"], addr["state"], addr["postalCode"]) if p)
    lines += ["", "*Shipping Address*", addr["name"] or payload["customerName"], where]
    return "\n".join(lines)


class WhatsAppChannel:
    """Text message to the business number via the WhatsApp Cloud API.

    Without API credentials the channel only logs a ``wa.me`` share link
    carrying the same message.
    """

    name = "whatsapp"

    def __init__(
        self,
        phone_number_id: Optional[str] = None,
        access_token: Optional[str] = None,
        business_number: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.phone_number_id = phone_number_id if phone_number_id is not None else getattr(settings, "WHATSAPP_PHONE_NUMBER_ID", "")
        self.access_token = access_token if access_token is not None else getattr(settings, "WHATSAPP_ACCESS_TOKEN", "")
        self.business_number = business_number or getattr(settings, "BUSINESS_WHATSAPP_NUMBER", "")
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 3.0)
        self.enabled = bool(self.phone_number_id and self.access_token)
        if not self.enabled:
            logger.warning("WhatsApp API not configured, falling back to share links")

    def send(self, payload: dict) -> None:
        message = order_message(payload)
        if not self.enabled:
            logger.info("whatsapp share link", extra={
                "order_id": payload["orderId"],
                "url": f"https://wa.me/{self.business_number}?text={quote(message)}",
            })
            return

        body = {
            "messaging_product": "whatsapp",
            "to": self.business_number,
            "type": "text",
            "text": {"body": message},
        }
        resp = httpx.post(
            f"{WHATSAPP_API_URL}/{self.phone_number_id}/messages",
            json=body,
            headers=request_headers({"Authorization": f"Bearer {self.access_token}"}),
            timeout=self.timeout,
        )
        resp.raise_for_status()


class DiscordChannel:
    """Structured order embed posted to the team webhook."""

    name = "discord"

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.webhook_url = webhook_url if webhook_url is not None else getattr(settings, "DISCORD_WEBHOOK_URL", "")
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 3.0)
        self.enabled = bool(self.webhook_url)
        if not self.enabled:
            logger.warning("DISCORD_WEBHOOK_URL not set - team alerts disabled")

    @staticmethod
    def embed(payload: dict) -> dict:
        addr = payload["address"]
        address_text = "\n".join(
            p for p in (addr["name"], addr["street"], f"{addr['city']} {addr['postalCode']}".strip(), addr["state"], addr["country"]) if p
        )
        items_text = "\n".join(
            f"• {it['name']} x {it['quantity']} @ {format_amount(it['price'])}" for it in payload["items"]
        ) or "No items"
        return {
            "title": f"New order received: {payload['orderId']}",
            "color": DISCORD_EMBED_COLOR,
            "fields": [
                {"name": "Customer", "value": f"{payload['customerName']} ({payload['userId']})", "inline": True},
                {"name": "Phone", "value": payload["customerPhone"] or "N/A", "inline": True},
                {"name": "Email", "value": payload["customerEmail"] or "N/A", "inline": True},
                {"name": "Payment Method", "value": payload["paymentMethod"], "inline": True},
                {"name": "Shipping (cost)", "value": format_amount(payload["shipping"]), "inline": True},
                {"name": "Subtotal", "value": format_amount(payload["subtotal"]), "inline": True},
                {"name": "Tax", "value": format_amount(payload["tax"]), "inline": True},
                {"name": "Total", "value": format_amount(payload["total"]), "inline": True},
                {"name": "Address", "value": address_text or "N/A"},
                {"name": "Items", "value": items_text},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def send(self, payload: dict) -> None:
        if not self.enabled:
            return
        resp = httpx.post(
            self.webhook_url,
            json={"embeds": [self.embed(payload)]},
            headers=request_headers(),
            timeout=self.timeout,
        )
        resp.raise_for_status()


# ---- Dispatchers ----
def _log_outcome(channel: str, order_id: str, fut: Future) -> None:
    exc = fut.exception()
    if exc is not None:
        logger.warning("notification failed", extra={
            "channel": channel, "order_id": order_id, "error": repr(exc),
        })
    else:
        logger.info("notification sent", extra={"channel": channel, "order_id": order_id})


class ThreadDispatcher:
    """Runs sends on a bounded thread pool; the caller never waits."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def submit(self, channel: str, order_id: str, fn: Callable[[], None]) -> None:
        # copy the context so the request id still reaches the log records
        ctx = contextvars.copy_context()
        fut = self._executor.submit(ctx.run, fn)
        fut.add_done_callback(partial(_log_outcome, channel, order_id))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineDispatcher:
    """Runs sends immediately in the calling thread, with the same error boundary."""

    def submit(self, channel: str, order_id: str, fn: Callable[[], None]) -> None:
        fut: Future = Future()
        try:
            fn()
        except Exception as exc:
            fut.set_exception(exc)
        else:
            fut.set_result(None)
        _log_outcome(channel, order_id, fut)


class NotificationFanout(OrderNotifierPort):
    """Sends one notification per channel for each confirmed order."""

    def __init__(self, channels: Iterable[Channel], dispatcher):
        self.channels = list(channels)
        self.dispatcher = dispatcher

    def order_confirmed(self, order: Order) -> None:
        payload = build_notification(order)
        for channel in self.channels:
            try:
                self.dispatcher.submit(channel.name, order.order_id, partial(channel.send, payload))
            except Exception:
                logger.exception("could not schedule notification", extra={
                    "channel": channel.name, "order_id": order.order_id,
                })


_dispatcher = None


def get_dispatcher():
    """Process-wide dispatcher; inline when ``settings.NOTIFY_SYNC`` is set."""
    global _dispatcher
    if getattr(settings, "NOTIFY_SYNC", False):
        return InlineDispatcher()
    if _dispatcher is None:
        _dispatcher = ThreadDispatcher(max_workers=getattr(settings, "NOTIFY_MAX_WORKERS", 4))
    return _dispatcher
