from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("create", views.create_order_view, name="create"),
    path("update-status", views.update_status_view, name="update_status"),
    path("success", views.order_success_view, name="order_success"),
    path("payment-result", views.payment_result_view, name="payment_result"),
    path("my", views.my_orders_view, name="my_orders"),
]
