"""HMAC-SHA256 signatures used by the payment gateway.

Two signatures are checked server-side:

- the checkout signature the gateway hands to the browser after a successful
  payment, computed over ``"<gateway_order_id>|<gateway_payment_id>"`` with
  the API key secret;
- the webhook signature sent in ``X-Razorpay-Signature``, computed over the
  raw request body with the webhook secret.

Comparisons are constant-time. An empty secret never verifies anything.
"""

import hashlib
import hmac


def sign(message: bytes | str, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def payment_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    return sign(f"{gateway_order_id}|{gateway_payment_id}", secret)


def _matches(expected: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))


def verify_payment_signature(
    gateway_order_id: str, gateway_payment_id: str, signature: str | None, secret: str
) -> bool:
    """Check the checkout signature returned by the gateway client SDK.

    Args:
        gateway_order_id: Intent id the payment was made against.
        gateway_payment_id: Payment id reported by the gateway.
        signature: Hex signature reported alongside the ids.
        secret: Gateway API key secret.

    Returns:
        bool: True only when the signature matches.
    """
    if not secret or not gateway_order_id or not gateway_payment_id:
        return False
    return _matches(payment_signature(gateway_order_id, gateway_payment_id, secret), signature)


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a webhook delivery against the raw body it was signed over."""
    if not secret:
        return False
    return _matches(sign(body, secret), signature)
