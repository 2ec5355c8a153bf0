"""Opt-in de-duplication of order placement.

Placing an order always mints a fresh order id, so a client that retries a
failed request may leave an abandoned pending order behind. Clients that
want to avoid that send an ``Idempotency-Key`` header: the first request
with a key claims it, and the response it produced is replayed for every
retry carrying the same key and the same body. Reusing a key with a
different body is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def request_hash(payload: dict) -> str:
    """SHA-256 of the payload serialized with sorted keys and no whitespace."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def claim_key(key: str, payload: dict) -> tuple[bool, IdempotencyKey]:
    """Claim ``key`` for this request, or find the request that claimed it.

    The insert runs in a nested savepoint so an ``IntegrityError`` only
    rolls back that block; an existing record is then locked with
    ``SELECT ... FOR UPDATE`` before its hash is compared.

    Args:
        key: Client-provided idempotency key.
        payload: Request body.

    Returns:
        tuple[bool, IdempotencyKey]: ``(replay, record)``; ``replay`` is True
        when an earlier request already owns the key.

    Raises:
        ValueError: 'IDEMPOTENCY_CONFLICT' when the key was used with a
            different body.
    """
    h = request_hash(payload)
    try:
        with transaction.atomic():
            return False, IdempotencyKey.objects.create(key=key, request_hash=h)
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def store_response(rec: IdempotencyKey, status_code: int, body: dict, order_id: str | None = None) -> None:
    """Remember the response so retries can be answered without side effects."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
