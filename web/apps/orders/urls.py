from django.urls import path
from .views import (
    AdvanceOrderView,
    CancelOrderView,
    OrdersCollectionView,
    OrdersPingView,
    PaymentDismissedView,
    PaymentFailedView,
    RetrieveOrderView,
)
app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<str:order_id>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<str:order_id>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<str:order_id>/<str:action>/", AdvanceOrderView.as_view(), name="orders-advance"),  # ship / deliver
    path("<str:order_id>/payment/failed/", PaymentFailedView.as_view(), name="payment-failed"),
    path("<str:order_id>/payment/dismissed/", PaymentDismissedView.as_view(), name="payment-dismissed"),
]
