"""Payment gateway simulator built with FastAPI.

Stands in for the hosted payment provider during local development and in
end-to-end tests. It speaks the subset of the provider API the checkout
service uses:

- ``POST /v1/orders`` creates a payment intent (HTTP basic auth with the
  configured key pair, amounts in minor units, idempotent per ``receipt``).
- ``POST /v1/orders/{id}/simulate-payment`` plays the customer paying in the
  hosted window and returns the callback triple the browser would receive,
  signed with the key secret. When ``GATEWAY_SIM_WEBHOOK_URL`` is set a
  signed ``payment.captured`` webhook is delivered there as well.

Keys are read from the environment on every request (``GATEWAY_KEY_ID``,
``GATEWAY_KEY_SECRET``, ``GATEWAY_WEBHOOK_SECRET``). Run it with
``python main.py`` from this directory (``PORT`` defaults to 9100).
"""

import hashlib
import hmac
import json
import logging
import os
import secrets
import time
import uuid
from typing import Annotated

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import GatewayRepo, ReceiptConflict, engine

app = FastAPI(title="Payment Gateway Simulator")
security = HTTPBasic()

Currency = constr(pattern=r"^[A-Z]{3}$")

logger = logging.getLogger("gateway_sim")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # brief wait until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


def sign(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def require_merchant(credentials: Annotated[HTTPBasicCredentials, Depends(security)]) -> str:
    """Check the basic-auth key pair against the configured one.

    Raises:
        HTTPException: 401 on any mismatch, or when no secret is configured.
    """
    key_id = os.getenv("GATEWAY_KEY_ID", "rzp_test_key")
    key_secret = os.getenv("GATEWAY_KEY_SECRET", "")
    ok = bool(key_secret) and secrets.compare_digest(credentials.username.encode(), key_id.encode()) \
        and secrets.compare_digest(credentials.password.encode(), key_secret.encode())
    if not ok:
        raise HTTPException(status_code=401, detail="AUTHENTICATION_FAILED", headers={"WWW-Authenticate": "Basic"})
    return key_secret


class CreateOrderRequest(BaseModel):
    """Body of ``POST /v1/orders``.

    Attributes:
        amount: Positive amount in minor units (paise).
        currency: Three-letter ISO code.
        receipt: Merchant reference, unique per intent.
        notes: Metadata echoed on the payment entity.
    """

    amount: int = Field(gt=0)
    currency: Currency = "INR"
    receipt: str = Field(min_length=1, max_length=64)
    notes: dict = Field(default_factory=dict)


class PaymentCallback(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v1/orders")
def create_order(req: CreateOrderRequest, _secret: Annotated[str, Depends(require_merchant)]):
    try:
        order = GatewayRepo().create_order(req.amount, req.currency, req.receipt, req.notes)
    except ReceiptConflict:
        raise HTTPException(status_code=409, detail="RECEIPT_CONFLICT")
    logger.info("intent created", extra={"gateway_order_id": order["id"], "receipt": req.receipt})
    return order


@app.get("/v1/orders/{order_id}")
def get_order(order_id: str, _secret: Annotated[str, Depends(require_merchant)]):
    order = GatewayRepo().get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return order


@app.post("/v1/orders/{order_id}/simulate-payment", response_model=PaymentCallback)
def simulate_payment(order_id: str, key_secret: Annotated[str, Depends(require_merchant)]):
    """Pay the intent and return the signed browser callback.

    Paying an already paid intent returns the same payment id, so a repeated
    call yields an identical callback.

    Raises:
        HTTPException: 404 when the intent does not exist.
    """
    result = GatewayRepo().mark_paid(order_id)
    if result is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    order, payment_id = result

    _deliver_captured_webhook(order, payment_id)
    return PaymentCallback(
        razorpay_order_id=order_id,
        razorpay_payment_id=payment_id,
        razorpay_signature=sign(f"{order_id}|{payment_id}", key_secret),
    )


def captured_event(order: dict, payment_id: str) -> dict:
    return {
        "entity": "event",
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "entity": "payment",
                    "order_id": order["id"],
                    "amount": order["amount"],
                    "currency": order["currency"],
                    "status": "captured",
                    "notes": order["notes"],
                }
            }
        },
        "created_at": int(time.time()),
    }


def _deliver_captured_webhook(order: dict, payment_id: str) -> None:
    url = os.getenv("GATEWAY_SIM_WEBHOOK_URL")
    if not url:
        return
    body = json.dumps(captured_event(order, payment_id)).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": sign(body.decode("utf-8"), os.getenv("GATEWAY_WEBHOOK_SECRET", "")),
    }
    try:
        r = httpx.post(url, content=body, headers=headers, timeout=3.0)
        logger.info("webhook delivered", extra={"gateway_order_id": order["id"], "status_code": r.status_code})
    except httpx.HTTPError as e:
        logger.warning("webhook delivery failed", extra={"gateway_order_id": order["id"], "error": str(e)})


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("GATEWAY_SIM_HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "9100")),
        log_level=os.getenv("LOG_LEVEL", "info"),
    )
