from decimal import Decimal, InvalidOperation

from django import forms
from django.core.exceptions import ValidationError

from catalog.models import Product
from .models import Order

MISSING_FIELDS = "Vui lòng điền đầy đủ thông tin"
INVALID_EMAIL = "Email không hợp lệ"
INVALID_PHONE = "Số điện thoại không hợp lệ"
EMPTY_CART = "Giỏ hàng trống"
INVALID_TOTAL = "Tổng tiền không hợp lệ"
INVALID_ITEM = "Sản phẩm trong giỏ hàng không hợp lệ"


class OrderCreateForm(forms.Form):
    """Validate the checkout payload. ``items`` is read from the raw data in :meth:`clean`."""

    customer_name = forms.CharField(max_length=128, error_messages={"required": MISSING_FIELDS})
    customer_email = forms.EmailField(required=False, error_messages={"invalid": INVALID_EMAIL})
    customer_phone = forms.RegexField(
        regex=r"^[0-9]{10}$",
        error_messages={"required": MISSING_FIELDS, "invalid": INVALID_PHONE},
    )
    shipping_address = forms.CharField(error_messages={"required": MISSING_FIELDS})
    total_amount = forms.DecimalField(
        max_digits=14,
        decimal_places=2,
        error_messages={
            "required": MISSING_FIELDS,
            "invalid": INVALID_TOTAL,
            "max_digits": INVALID_TOTAL,
            "max_decimal_places": INVALID_TOTAL,
            "max_whole_digits": INVALID_TOTAL,
        },
    )
    payment_method = forms.ChoiceField(choices=Order.PAYMENT_METHODS, required=False)
    notes = forms.CharField(required=False)

    def clean_total_amount(self):
        total = self.cleaned_data["total_amount"]
        if total <= 0:
            raise ValidationError(INVALID_TOTAL)
        return total

    def clean_payment_method(self):
        return self.cleaned_data.get("payment_method") or "cod"

    def clean(self):
        cleaned = super().clean()
        raw = self.data.get("items")
        if raw is None or raw == "":
            self.add_error(None, MISSING_FIELDS)
        elif not isinstance(raw, list) or not raw:
            self.add_error(None, EMPTY_CART)
        else:
            try:
                cleaned["items"] = self._clean_items(raw)
            except ValidationError as e:
                self.add_error(None, e)
        return cleaned

    def _clean_items(self, raw):
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValidationError(INVALID_ITEM)
            try:
                product_id = int(entry.get("product_id") or entry.get("id"))
                quantity = int(entry.get("quantity"))
                price = Decimal(str(entry.get("price")))
            except (TypeError, ValueError, InvalidOperation):
                raise ValidationError(INVALID_ITEM)
            items.append({"product_id": product_id, "quantity": quantity, "price": price})

        wanted = {i["product_id"] for i in items}
        found = set(Product.objects.filter(pk__in=wanted).values_list("pk", flat=True))
        if wanted - found:
            raise ValidationError(INVALID_ITEM)
        return items

    def first_error(self) -> str:
        messages = [m for errs in self.errors.values() for m in errs]
        if MISSING_FIELDS in messages:
            return MISSING_FIELDS
        return messages[0] if messages else MISSING_FIELDS


class OrderStatusForm(forms.Form):
    status = forms.ChoiceField(choices=Order.STATUS)
    payment_status = forms.ChoiceField(choices=Order.PAYMENT_STATUS, required=False)
