from django.urls import path
from .views import (
    AddressCollectionView,
    CartView,
    CreateIntentView,
    GatewayWebhookView,
    VerifyPaymentView,
)
app_name = "payment"

urlpatterns = [
    path("payment/create-order/", CreateIntentView.as_view(), name="create-intent"),
    path("payment/verify/", VerifyPaymentView.as_view(), name="verify"),
    path("webhooks/gateway/", GatewayWebhookView.as_view(), name="gateway-webhook"),
    path("cart/", CartView.as_view(), name="cart"),
    path("users/<str:user_id>/addresses/", AddressCollectionView.as_view(), name="addresses"),
]
