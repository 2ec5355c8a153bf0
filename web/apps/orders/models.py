from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    # Client-minted id (ORD-<millis>-<suffix>) exposed in the API
    order_id = models.CharField(primary_key=True, max_length=40)
    user_id = models.CharField(max_length=128, db_index=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        PENDING_PAYMENT = "pending_payment"
        CONFIRMED = "confirmed"
        PAYMENT_FAILED = "payment_failed"
        PAYMENT_CANCELLED = "payment_cancelled"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"
        CANCELLED = "cancelled"
        PENDING_COD = "pending_cod"

    class PaymentMethod(models.TextChoices):
        ONLINE = "online"
        COD = "cash_on_delivery"

    # Snapshots, written once at creation
    customer = models.JSONField(default=dict)
    items = models.JSONField(default=list)
    address = models.JSONField(default=dict)
    summary = models.JSONField(default=dict)

    payment_method = models.CharField(max_length=32, choices=PaymentMethod.choices)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_status = models.CharField(max_length=32, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)

    gateway_order_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    gateway_payment_id = models.CharField(max_length=64, null=True, blank=True)
    payment_error = models.TextField(null=True, blank=True)
    cancellation_reason = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]


class AddressModel(models.Model):
    class AddressType(models.TextChoices):
        HOME = "home"
        WORK = "work"
        OTHER = "other"

    user_id = models.CharField(max_length=128, db_index=True)
    name = models.CharField(max_length=128)
    phone = models.CharField(max_length=32)
    street = models.CharField(max_length=255)
    city = models.CharField(max_length=128)
    state = models.CharField(max_length=128)
    postal_code = models.CharField(max_length=16)
    country = models.CharField(max_length=64, default="India")
    address_type = models.CharField(max_length=8, choices=AddressType.choices, default=AddressType.HOME)
    is_default = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "addresses"
        ordering = ["created_at", "id"]


class StoreSettingsModel(models.Model):
    STORE_KEY = "store_settings"

    key = models.CharField(primary_key=True, max_length=64)
    # Stored as a percentage (18 means 18%)
    tax_rate_percent = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "store_settings"


class IdempotencyKey(models.Model):
    key = models.CharField(primary_key=True, max_length=200)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.CharField(max_length=40, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
