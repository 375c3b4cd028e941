from django.conf import settings
from django.db import models
from django.db.models import Q


class Order(models.Model):
    PAYMENT_METHODS = [
        ("cod", "Cash on delivery"),
        ("vnpay", "VNPay"),
    ]
    PAYMENT_STATUS = [
        ("pending", "Pending"),
        ("paid", "Paid"),
        ("failed", "Failed"),
    ]
    STATUS = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("shipping", "Shipping"),
        ("completed", "Completed"),
        ("cancelled", "Cancelled"),
    ]

    order_number = models.CharField(max_length=32, unique=True, db_index=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders"
    )
    customer_name = models.CharField(max_length=128)
    customer_email = models.EmailField(blank=True, default="")
    customer_phone = models.CharField(max_length=16)
    shipping_address = models.TextField()
    notes = models.TextField(blank=True, default="")

    total_amount = models.DecimalField(max_digits=14, decimal_places=2)
    payment_method = models.CharField(max_length=16, choices=PAYMENT_METHODS, default="cod")
    payment_status = models.CharField(max_length=16, choices=PAYMENT_STATUS, default="pending", db_index=True)
    status = models.CharField(max_length=16, choices=STATUS, default="pending", db_index=True)
    payment_details = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    def as_dict(self) -> dict:
        return {
            "id": self.order_number,
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "notes": self.notes,
            "total_amount": str(self.total_amount),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "payment_details": self.payment_details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __str__(self):
        return f"{self.order_number} ({self.status}/{self.payment_status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="order_items")
    quantity = models.IntegerField()
    price = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=1), name="order_item_quantity_positive"),
            models.CheckConstraint(condition=Q(price__gte=0), name="order_item_price_non_negative"),
        ]

    @property
    def line_total(self):
        return self.price * self.quantity

    def __str__(self):
        return f"{self.order_id}: {self.product_id} x{self.quantity}"
