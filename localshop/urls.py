from django.contrib import admin
from django.urls import include, path

from . import views

urlpatterns = [
    path("", views.home_view, name="home"),
    path("admin/", admin.site.urls),
    path("orders/", include("orders.urls")),
    path("payments/", include("payments.urls")),
]

handler404 = "localshop.views.error_404_view"
