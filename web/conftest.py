"""Shared fixtures for the checkout service tests.

Every test runs with the in-process gateway stub and recording notifier,
synchronous notification dispatch and a known signing secret. The gateway
circuit breaker and the throttle counters are reset around each test.
"""

import pytest
from django.core.cache import cache

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


@pytest.fixture(autouse=True)
def checkout_settings(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.NOTIFY_SYNC = True
    settings.GATEWAY_KEY_ID = "rzp_test_key"
    settings.GATEWAY_KEY_SECRET = KEY_SECRET
    settings.GATEWAY_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.GATEWAY_BASE_URL = "http://gateway.test"
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.DISCORD_WEBHOOK_URL = ""
    settings.WHATSAPP_PHONE_NUMBER_ID = ""
    settings.WHATSAPP_ACCESS_TOKEN = ""
    return settings


@pytest.fixture(autouse=True)
def closed_gateway_circuit():
    from apps.orders.http_adapters import gateway_cb

    gateway_cb.reset()
    cache.clear()  # throttle counters
    yield
    gateway_cb.reset()
