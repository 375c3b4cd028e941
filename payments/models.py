from django.db import models


class VNPayTransaction(models.Model):
    """One payment attempt, correlated with VNPay callbacks by ``txn_ref``."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    STATUS = [
        (PENDING, "Pending"),
        (SUCCESS, "Success"),
        (FAILED, "Failed"),
        (EXPIRED, "Expired"),
    ]
    # Statuses a verified callback may still resolve
    OPEN_STATUSES = (PENDING, EXPIRED)

    order = models.ForeignKey("orders.Order", on_delete=models.CASCADE, related_name="vnpay_transactions")
    txn_ref = models.CharField(max_length=100, unique=True, db_index=True)
    amount = models.DecimalField(max_digits=14, decimal_places=2)  # major units, not x100
    order_info = models.CharField(max_length=255)
    order_type = models.CharField(max_length=32, default="other")
    locale = models.CharField(max_length=8, default="vn")
    ip_addr = models.CharField(max_length=45, blank=True, default="")
    create_date = models.CharField(max_length=14)  # yyyyMMddHHmmss, GMT+7

    status = models.CharField(max_length=16, choices=STATUS, default=PENDING, db_index=True)
    response_code = models.CharField(max_length=8, blank=True, default="")
    response_message = models.CharField(max_length=255, blank=True, default="")
    transaction_no = models.CharField(max_length=64, blank=True, default="")
    bank_code = models.CharField(max_length=32, blank=True, default="")
    pay_date = models.CharField(max_length=14, blank=True, default="")
    response_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.SUCCESS, self.FAILED)

    def __str__(self):
        return f"{self.txn_ref} ({self.status})"


class PaymentHistory(models.Model):
    STATUS = [
        ("success", "Success"),
        ("failed", "Failed"),
    ]

    order = models.ForeignKey("orders.Order", on_delete=models.CASCADE, related_name="payment_history")
    # one audit row per resolved transaction
    transaction = models.OneToOneField(VNPayTransaction, on_delete=models.CASCADE, related_name="history")
    method = models.CharField(max_length=16, default="VNPAY")
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    status = models.CharField(max_length=16, choices=STATUS)
    transaction_no = models.CharField(max_length=64, blank=True, default="")
    payment_details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)
        verbose_name_plural = "payment history"

    def __str__(self):
        return f"{self.order_id} {self.method} {self.status} {self.amount}"
