"""HTTP adapter for the payment gateway with retries, a circuit breaker and
context headers.

This module implements the concrete ``PaymentGatewayPort`` using ``httpx``.
It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
  by the gateway middleware.
- A circuit breaker in front of the gateway so an unhealthy provider fails
  fast, with HALF_OPEN probing after a timeout.
- A simple retry policy with exponential backoff for transport errors and
  5xx responses.
- Intent idempotency: the order id is sent as ``receipt`` and as the
  ``Idempotency-Key`` header, so a retried intent request for the same
  order is recognisable on the provider side.

Every failure that leaves the order without an intent surfaces as
``GatewayUnavailable``.
"""

import logging
import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import GatewayIntent, GatewayUnavailable, PaymentGatewayPort

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitOpen(RuntimeError):
    pass


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe is let
      through at a time; a failed probe opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Gate a call.

        Raises:
            CircuitOpen: While OPEN, or while a HALF_OPEN probe is running.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpen(f"{self.name}: circuit open")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpen(f"{self.name}: probe in flight")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
            self._probe_in_flight = False

    def reset(self):
        self.on_success()


gateway_cb = CircuitBreaker(
    "gateway",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def request_headers(extra: Optional[dict] = None) -> dict:
    """Base outgoing headers: ``X-Request-ID`` when known, plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return ``(max_attempts, backoff_base_seconds, max_sleep_seconds)``."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


# ---------------- Gateway Adapter ---------------- #

class HttpGatewayClient(PaymentGatewayPort):
    """Hosted-checkout gateway client (Razorpay-compatible orders API)."""

    def __init__(
        self,
        base_url: str | None = None,
        key_id: str | None = None,
        key_secret: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.key_id = key_id if key_id is not None else settings.GATEWAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.GATEWAY_KEY_SECRET
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def create_intent(self, amount: int, currency: str, receipt: str, notes: dict) -> GatewayIntent:
        """Create a payment intent with the provider.

        Retries transport errors and 5xx with exponential backoff behind the
        gateway circuit breaker. 4xx responses are not retried.

        Args:
            amount: Amount in minor units.
            currency: ISO currency code.
            receipt: Our order id.
            notes: Free-form metadata echoed back in webhooks.

        Returns:
            GatewayIntent: ``id``, ``amount`` and ``currency`` as reported by
            the provider.

        Raises:
            GatewayUnavailable: On an open circuit, exhausted retries, a
                non-retriable error status or a malformed response.
        """
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        max_attempts, backoff, cap = _retry_policy()

        try:
            state = gateway_cb.before_call()
        except CircuitOpen as e:
            raise GatewayUnavailable(str(e)) from e

        headers = request_headers({
            "Idempotency-Key": receipt,
            "X-Circuit-State": state,
            "X-Retry-Count": "0",
        })
        tries = 0

        with httpx.Client(timeout=self.timeout, auth=(self.key_id, self.key_secret)) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.post(f"{self.base_url}/v1/orders", json=payload, headers=headers)
                    if 200 <= resp.status_code < 300:
                        gateway_cb.on_success()
                        try:
                            return self._parse_intent(resp.json(), amount, currency)
                        except (TypeError, ValueError) as e:
                            logger.error("malformed gateway response", extra={
                                "receipt": receipt, "status_code": resp.status_code,
                            })
                            raise GatewayUnavailable("malformed gateway response") from e
                    if not _should_retry(resp, None):
                        # business refusal (bad auth, bad amount): not a circuit failure
                        gateway_cb.on_success()
                        logger.error("gateway refused intent", extra={
                            "receipt": receipt, "status_code": resp.status_code,
                        })
                        raise GatewayUnavailable(f"gateway returned {resp.status_code}")
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)
                if tries >= max_attempts:
                    gateway_cb.on_failure()
                    logger.error("gateway intent failed after retries", extra={
                        "receipt": receipt, "attempts": tries,
                        "status_code": getattr(resp, "status_code", None),
                    })
                    raise GatewayUnavailable("gateway unavailable") from exc

                sleep_s = backoff * (2 ** (tries - 1))
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))

    @staticmethod
    def _parse_intent(data: dict, amount: int, currency: str) -> GatewayIntent:
        intent_id = data.get("id") if isinstance(data, dict) else None
        if not intent_id:
            raise GatewayUnavailable("gateway response without intent id")
        return GatewayIntent(
            id=str(intent_id),
            amount=int(data.get("amount", amount)),
            currency=str(data.get("currency", currency)),
        )
