"""Pydantic schemas for the checkout API.

Request schemas validate and normalize incoming JSON before anything reaches
the domain. Field names are snake_case in Python and camelCase on the wire;
the gateway callback schema also accepts the provider's own
``razorpay_*`` names.
"""

import re
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .domain import CartLine, PaymentMethod

PHONE_RE = re.compile(r"^\+?[0-9][0-9 -]{6,14}$")
POSTAL_RE = re.compile(r"^[A-Za-z0-9 -]{3,10}$")


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CartItemIn(CamelModel):
    """A cart line as sent by the storefront.

    Attributes:
        product_id: Catalog id of the product.
        name: Display name, snapshotted into the order.
        price: Unit price in whole currency units.
        quantity: Positive number of units.
    """

    product_id: str = Field(alias="productId", min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    price: int = Field(ge=0)
    quantity: int = Field(gt=0, le=999)
    image: str = ""
    category: str = ""

    def to_line(self) -> CartLine:
        return CartLine(
            product_id=self.product_id,
            name=self.name,
            price=self.price,
            quantity=self.quantity,
            image=self.image,
            category=self.category,
        )


class CartIn(CamelModel):
    items: list[CartItemIn]


class CustomerIn(CamelModel):
    name: str = Field(default="", max_length=128)
    phone: str = Field(default="", max_length=32)
    email: str = Field(default="", max_length=254)


class CreateOrderDTO(CamelModel):
    """Schema for placing an order.

    Attributes:
        user_id: Customer reference.
        address_id: One of the customer's saved addresses. Optional here so
            a missing selection is reported as ADDRESS_REQUIRED.
        payment_method: ``online``/``razorpay`` or ``cod``/``cash_on_delivery``.
        items: Cart lines. When omitted the session cart is used.
        customer: Contact details for notifications.
    """

    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    address_id: Optional[str] = Field(default=None, alias="addressId")
    payment_method: str = Field(alias="paymentMethod")
    items: Optional[list[CartItemIn]] = None
    customer: Optional[CustomerIn] = None

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        """Normalize the payment method to its canonical value.

        Raises:
            ValueError: When the method is not supported.
        """
        return PaymentMethod.parse(v).value

    @field_validator("address_id", mode="before")
    @classmethod
    def coerce_address_id(cls, v):
        return None if v in (None, "") else str(v)


class CreateIntentDTO(CamelModel):
    """Body of ``POST /api/payment/create-order/``. ``amount`` is whole units."""

    amount: int = Field(gt=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    order_id: str = Field(alias="orderId", min_length=1)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class VerifyPaymentDTO(CamelModel):
    gateway_order_id: str = Field(validation_alias=AliasChoices("gatewayOrderId", "razorpay_order_id", "gateway_order_id"), min_length=1)
    gateway_payment_id: str = Field(validation_alias=AliasChoices("gatewayPaymentId", "razorpay_payment_id", "gateway_payment_id"), min_length=1)
    signature: str = Field(validation_alias=AliasChoices("signature", "razorpay_signature"), min_length=1)
    order_id: str = Field(validation_alias=AliasChoices("orderId", "order_id"), min_length=1)


class PaymentFailedDTO(CamelModel):
    description: Optional[str] = Field(default=None, max_length=500)


class CancelOrderDTO(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AddressIn(CamelModel):
    """Schema for saving a delivery address."""

    name: str = Field(min_length=1, max_length=128)
    phone: str
    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=128)
    state: str = Field(min_length=1, max_length=128)
    postal_code: str = Field(alias="postalCode")
    country: str = Field(default="India", min_length=1, max_length=64)
    address_type: Literal["home", "work", "other"] = Field(default="home", alias="addressType")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not PHONE_RE.match(v):
            raise ValueError("Invalid phone number")
        return v

    @field_validator("postal_code")
    @classmethod
    def validate_postal_code(cls, v: str) -> str:
        if not POSTAL_RE.match(v):
            raise ValueError("Invalid postal code")
        return v


class OrderReadDTO(CamelModel):
    """Compact order row used by the list endpoint."""

    order_id: str = Field(serialization_alias="orderId")
    user_id: str = Field(serialization_alias="userId")
    status: str
    payment_status: str = Field(serialization_alias="paymentStatus")
    payment_method: str = Field(serialization_alias="paymentMethod")
    total: int
    gateway_order_id: Optional[str] = Field(default=None, serialization_alias="gatewayOrderId")
