from django.urls import include, path

urlpatterns = [
    path("api/orders/", include("apps.orders.urls")),
    path("api/", include("apps.orders.payment_urls")),
    path("", include("apps.monitoring.urls")),
]
