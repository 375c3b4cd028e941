from django.contrib import admin
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    raw_id_fields = ("product",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer_name", "total_amount", "payment_method", "payment_status", "status", "created_at")
    search_fields = ("order_number", "customer_name", "customer_phone", "customer_email")
    list_filter = ("status", "payment_status", "payment_method", "created_at")
    readonly_fields = ("created_at", "updated_at", "payment_details")
    raw_id_fields = ("user",)
    inlines = [OrderItemInline]
