import json
import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404, render
from django.urls import reverse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from payments.utils import describe_response_code
from .forms import OrderCreateForm, OrderStatusForm
from .models import Order
from .services import OrderCreationError, create_order, update_order_status

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


@csrf_exempt
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return JsonResponse({"error": "Invalid JSON body"}, status=400)

    form = OrderCreateForm(body)
    if not form.is_valid():
        return JsonResponse({"error": form.first_error()}, status=400)

    data = form.cleaned_data
    try:
        order = create_order(
            customer_name=data["customer_name"],
            customer_email=data["customer_email"],
            customer_phone=data["customer_phone"],
            shipping_address=data["shipping_address"],
            items=data["items"],
            total_amount=data["total_amount"],
            payment_method=data["payment_method"],
            notes=data["notes"],
            user=request.user if request.user.is_authenticated else None,
        )
    except OrderCreationError:
        return JsonResponse({"error": "Lỗi khi tạo đơn hàng"}, status=500)

    return JsonResponse({
        "success": True,
        "order": order.as_dict(),
        "message": "Đặt hàng thành công",
        "redirect": f"{reverse('orders:order_success')}?orderId={order.order_number}",
    })


@staff_member_required
@require_POST
def update_status_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return JsonResponse({"error": "Invalid JSON body"}, status=400)
    order_number = body.get("orderId") or body.get("order_id")
    if not order_number or not body.get("status"):
        return JsonResponse({"error": "Missing required fields"}, status=400)

    form = OrderStatusForm(body)
    if not form.is_valid():
        return JsonResponse({"error": "Invalid status"}, status=400)

    order = Order.objects.filter(order_number=order_number).first()
    if order is None:
        return JsonResponse({"error": "Order not found"}, status=404)

    update_order_status(order, form.cleaned_data["status"], form.cleaned_data.get("payment_status") or None)
    logger.info("Order %s set to %s/%s by %s", order.order_number, order.status, order.payment_status, request.user)
    return JsonResponse({"success": True, "order": order.as_dict(), "message": "Order updated successfully"})


@require_GET
def order_success_view(request):
    order = get_object_or_404(Order, order_number=request.GET.get("orderId", ""))
    items = order.items.select_related("product")
    return render(request, "orders/order_success.html", {"order": order, "items": items})


@require_GET
def payment_result_view(request):
    # The query string only names the order; the outcome comes from our records.
    order = get_object_or_404(Order, order_number=request.GET.get("orderId", ""))
    txn = order.vnpay_transactions.order_by("-created_at").first()
    success = order.payment_status == "paid"
    pending = not success and (txn is None or not txn.is_terminal)
    ctx = {
        "order": order,
        "success": success,
        "pending": pending,
        "message": describe_response_code(txn.response_code if txn else ""),
    }
    return render(request, "orders/payment_result.html", ctx)


@login_required
def my_orders_view(request):
    """List previous orders for the logged-in customer."""
    qs = Order.objects.filter(user=request.user).order_by("-created_at")

    # Very light pagination
    try:
        page = int(request.GET.get("page", "1"))
        if page < 1: page = 1
    except ValueError:
        page = 1
    page_size = 10
    start = (page - 1) * page_size
    end = start + page_size
    total = qs.count()
    items = list(qs[start:end])

    ctx = {
        "orders": items,
        "page": page,
        "has_next": end < total,
        "has_prev": start > 0,
        "next_page": page + 1,
        "prev_page": page - 1,
    }
    return render(request, "orders/my_orders.html", ctx)
