"""Pricing calculator for checkout orders.

All amounts are whole currency units (no minor units). The calculator is a
pure function of the cart lines and a ``PricingPolicy``; the tax rate itself
is read from the store settings record by ``get_tax_rate``.
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Protocol

from django.conf import settings
from django.db import DatabaseError

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE = 0.18
DEFAULT_FREE_SHIPPING_THRESHOLD = 500
DEFAULT_FLAT_SHIPPING_FEE = 50


class PricedLine(Protocol):
    price: int
    quantity: int


@dataclass(frozen=True)
class PricingBreakdown:
    """Derived totals for an order.

    Attributes:
        subtotal: Sum of ``price * quantity`` over the cart lines.
        tax: ``subtotal * tax_rate`` rounded to the nearest unit.
        shipping: Zero above the free-shipping threshold, flat fee otherwise.
        total: ``subtotal + tax + shipping``.
    """

    subtotal: int = 0
    tax: int = 0
    shipping: int = 0
    total: int = 0

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "tax": self.tax,
            "shipping": self.shipping,
            "total": self.total,
        }


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3)."""
    return int(math.floor(Decimal(str(value)) + Decimal("0.5")))


def calculate_pricing(
    lines: Iterable[PricedLine],
    tax_rate: float,
    free_shipping_threshold: int = DEFAULT_FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee: int = DEFAULT_FLAT_SHIPPING_FEE,
) -> PricingBreakdown:
    """Compute the pricing breakdown for the given cart lines.

    An empty cart yields an all-zero breakdown; shipping is only charged when
    there is something to ship.

    Args:
        lines: Objects exposing integer ``price`` and ``quantity``.
        tax_rate: Fraction applied to the subtotal (0.18 for 18%).
        free_shipping_threshold: Subtotal at or above which shipping is free.
        flat_shipping_fee: Shipping charged below the threshold.

    Returns:
        PricingBreakdown: The derived totals.
    """
    lines = list(lines)
    if not lines:
        return PricingBreakdown()

    subtotal = sum(line.price * line.quantity for line in lines)
    tax = round_half_up(subtotal * tax_rate)
    shipping = 0 if subtotal >= free_shipping_threshold else flat_shipping_fee
    return PricingBreakdown(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
    )


@dataclass(frozen=True)
class PricingPolicy:
    """Tax rate and shipping rules applied to one checkout."""

    tax_rate: float = DEFAULT_TAX_RATE
    free_shipping_threshold: int = DEFAULT_FREE_SHIPPING_THRESHOLD
    flat_shipping_fee: int = DEFAULT_FLAT_SHIPPING_FEE

    def price(self, lines: Iterable[PricedLine]) -> PricingBreakdown:
        return calculate_pricing(
            lines,
            self.tax_rate,
            free_shipping_threshold=self.free_shipping_threshold,
            flat_shipping_fee=self.flat_shipping_fee,
        )


def parse_tax_percentage(raw) -> float | None:
    """Convert a stored tax percentage (``18`` or ``"18"``) to a fraction.

    Returns None for missing, non-numeric or negative values.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return float(value / 100)


def get_tax_rate() -> float:
    """Read the tax rate from the store settings record.

    Falls back to ``settings.DEFAULT_TAX_RATE`` (0.18) when the record is
    missing, cannot be read or holds an unusable value.
    """
    from .models import StoreSettingsModel

    default = getattr(settings, "DEFAULT_TAX_RATE", DEFAULT_TAX_RATE)
    try:
        rec = StoreSettingsModel.objects.get(key=StoreSettingsModel.STORE_KEY)
    except StoreSettingsModel.DoesNotExist:
        return default
    except DatabaseError:
        logger.warning("store settings unavailable, using default tax rate", exc_info=True)
        return default

    rate = parse_tax_percentage(rec.tax_rate_percent)
    if rate is None:
        logger.warning("unusable tax rate in store settings, using default",
                       extra={"raw_tax_rate": str(rec.tax_rate_percent)})
        return default
    return rate


def get_pricing_policy() -> PricingPolicy:
    """Build the policy for a checkout from store and Django settings."""
    return PricingPolicy(
        tax_rate=get_tax_rate(),
        free_shipping_threshold=getattr(settings, "FREE_SHIPPING_THRESHOLD", DEFAULT_FREE_SHIPPING_THRESHOLD),
        flat_shipping_fee=getattr(settings, "FLAT_SHIPPING_FEE", DEFAULT_FLAT_SHIPPING_FEE),
    )
