from django.contrib import admin
from .models import PaymentHistory, VNPayTransaction


@admin.register(VNPayTransaction)
class VNPayTransactionAdmin(admin.ModelAdmin):
    list_display = ("txn_ref", "order", "amount", "status", "response_code", "transaction_no", "created_at", "updated_at")
    search_fields = ("txn_ref", "transaction_no", "order__order_number")
    list_filter = ("status", "bank_code", "created_at")
    readonly_fields = ("created_at", "updated_at", "response_payload")


@admin.register(PaymentHistory)
class PaymentHistoryAdmin(admin.ModelAdmin):
    list_display = ("order", "method", "amount", "status", "transaction_no", "created_at")
    search_fields = ("order__order_number", "transaction_no")
    list_filter = ("method", "status", "created_at")
    readonly_fields = ("created_at", "payment_details")
