from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("vnpay/create", views.create_payment_view, name="vnpay_create"),
    path("vnpay/return", views.vnpay_return_view, name="vnpay_return"),  # browser comes here
    path("vnpay/ipn", views.vnpay_ipn_view, name="vnpay_ipn"),  # server notify
]
