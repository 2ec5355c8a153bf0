"""SQLAlchemy persistence for the gateway simulator.

Stores the payment intents ("orders" in the provider's vocabulary) that the
checkout service creates, keyed by the provider-style id and unique per
merchant ``receipt`` so a retried create returns the intent it already made.

``GATEWAY_SIM_DATABASE_URL`` selects the database; the default is a local
SQLite file. ``sqlite://`` gives a shared in-memory database for tests.
"""

import os
import secrets
import string
import time
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import JSON, BigInteger, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("GATEWAY_SIM_DATABASE_URL", "sqlite:///./gateway_sim.db")

ID_ALPHABET = string.ascii_letters + string.digits


def _make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one connection shared by every session, or each would see its own empty db
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class GatewayOrder(Base):
    """A payment intent as the provider sees it.

    Attributes:
        id: Provider id, ``order_<14 alphanumerics>``.
        receipt: Merchant reference (the checkout order id); unique.
        amount: Amount in minor units.
        currency: ISO currency code.
        status: ``created`` until a payment is simulated, then ``paid``.
        notes: Free-form merchant metadata, echoed back on payments.
        payment_id: ``pay_...`` once paid.
        created_at: Unix seconds.
    """

    __tablename__ = "gateway_orders"

    id = mapped_column(String(32), primary_key=True)
    receipt = mapped_column(String(64), unique=True, nullable=False)
    amount = mapped_column(Integer, nullable=False)
    currency = mapped_column(String(3), nullable=False)
    status = mapped_column(String(16), nullable=False, default="created")
    notes = mapped_column(JSON, nullable=False, default=dict)
    payment_id = mapped_column(String(32), nullable=True)
    created_at = mapped_column(BigInteger, nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "entity": "order",
            "amount": self.amount,
            "currency": self.currency,
            "receipt": self.receipt,
            "status": self.status,
            "notes": self.notes or {},
            "created_at": self.created_at,
        }


def provider_id(prefix: str) -> str:
    return prefix + "_" + "".join(secrets.choice(ID_ALPHABET) for _ in range(14))


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


class ReceiptConflict(Exception):
    """The receipt already names an intent with another amount or currency."""


class GatewayRepo:
    def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> dict:
        """Create an intent, or return the one already created for ``receipt``.

        Raises:
            ReceiptConflict: When ``receipt`` exists with a different amount
                or currency.
        """
        with get_session() as s:
            existing = s.execute(select(GatewayOrder).where(GatewayOrder.receipt == receipt)).scalars().first()
            if existing is not None:
                if existing.amount != amount or existing.currency != currency:
                    raise ReceiptConflict(receipt)
                return existing.as_dict()
            row = GatewayOrder(
                id=provider_id("order"),
                receipt=receipt,
                amount=amount,
                currency=currency,
                status="created",
                notes=notes,
                created_at=int(time.time()),
            )
            s.add(row)
            s.commit()
            return row.as_dict()

    def get_order(self, order_id: str) -> Optional[dict]:
        with get_session() as s:
            row = s.get(GatewayOrder, order_id)
            return row.as_dict() if row else None

    def mark_paid(self, order_id: str) -> Optional[tuple[dict, str]]:
        """Record a payment for the intent; paying twice returns the first payment id.

        Returns:
            tuple[dict, str] | None: ``(order, payment_id)``, or None when the
            intent does not exist.
        """
        with get_session() as s:
            row = s.get(GatewayOrder, order_id)
            if row is None:
                return None
            if not row.payment_id:
                row.payment_id = provider_id("pay")
                row.status = "paid"
                s.commit()
            return row.as_dict(), row.payment_id


Base.metadata.create_all(engine)
