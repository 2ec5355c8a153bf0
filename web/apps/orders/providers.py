"""Service provider helpers for wiring the payment orchestrator with ports.

``get_orchestrator`` returns a ``PaymentOrchestrator`` backed by the ORM
ledger. When ``settings.USE_HTTP_ADAPTERS`` is truthy the gateway is the
httpx client and confirmations fan out to the configured chat channels;
otherwise the in-process stubs are used, which suits tests and local
development without gateway credentials.

Views call these through the module (``providers.get_orchestrator()``) so
tests can swap any of them with ``monkeypatch``.
"""

from django.conf import settings

from .adapters import GatewayStub, RecordingNotifier
from .domain import OrderNotifierPort, PaymentGatewayPort, PaymentOrchestrator
from .http_adapters import HttpGatewayClient
from .notifications import DiscordChannel, NotificationFanout, WhatsAppChannel, get_dispatcher
from .pricing import PricingPolicy, get_pricing_policy
from .repository import AddressBook, OrderRepository


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def get_gateway() -> PaymentGatewayPort:
    if _use_http():
        return HttpGatewayClient()
    return GatewayStub()


_fanout = None


def get_notifier() -> OrderNotifierPort:
    """Process-wide fan-out over the chat channels, built on first use."""
    global _fanout
    if not _use_http():
        return RecordingNotifier()
    if _fanout is None:
        _fanout = NotificationFanout([WhatsAppChannel(), DiscordChannel()], get_dispatcher())
    return _fanout


def get_orchestrator() -> PaymentOrchestrator:
    """Return a configured PaymentOrchestrator instance."""
    return PaymentOrchestrator(
        ledger=OrderRepository(),
        gateway=get_gateway(),
        notifier=get_notifier(),
        signing_secret=settings.GATEWAY_KEY_SECRET,
        currency=getattr(settings, "GATEWAY_CURRENCY", "INR"),
    )


def get_address_book() -> AddressBook:
    return AddressBook()


def get_policy() -> PricingPolicy:
    return get_pricing_policy()
