import json
import logging

from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError
from django.http import JsonResponse
from django.shortcuts import redirect, render
from django.urls import reverse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from orders.models import Order
from .integrations.vnpay import GatewayResponse, VNPayConfig, VNPayError, VNPaySigner
from .services import AmountMismatch, UnknownTransaction, apply_gateway_response, start_payment
from .utils import client_ip

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Không thể xác nhận kết quả thanh toán. Vui lòng liên hệ cửa hàng nếu tài khoản của bạn đã bị trừ tiền."


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _verified_params(request):
    """Return the callback parameters if their signature checks out, else None."""
    params = request.GET.dict()
    signer = VNPaySigner(VNPayConfig.from_settings().hash_secret)
    if signer.verify(params):
        return params
    logger.warning(
        "VNPay signature mismatch from %s for txn_ref=%s", client_ip(request), params.get("vnp_TxnRef", "")
    )
    return None


@csrf_exempt
@require_POST
def create_payment_view(request):
    body = _json_body(request)
    if not body:
        return JsonResponse({"error": "Invalid JSON body"}, status=400)
    order_number = str(body.get("order_id") or body.get("orderId") or "").strip()
    if not order_number:
        return JsonResponse({"error": "order_id is required"}, status=400)

    order = Order.objects.filter(order_number=order_number).first()
    if order is None:
        return JsonResponse({"error": "Order not found"}, status=404)
    if order.is_paid:
        return JsonResponse({"error": "Order already paid"}, status=400)

    try:
        txn, payment_url = start_payment(order, ip_addr=client_ip(request))
    except VNPayError as e:
        return JsonResponse({"error": str(e)}, status=400)
    except (DatabaseError, ImproperlyConfigured):
        logger.exception("Could not create VNPay transaction for order %s", order.order_number)
        return JsonResponse({"error": "Failed to create transaction"}, status=500)

    return JsonResponse({"paymentUrl": payment_url, "txnRef": txn.txn_ref})


@require_GET
def vnpay_return_view(request):
    """Browser redirect back from VNPay."""
    params = _verified_params(request)
    if params is None:
        return render(request, "payments/failure.html", {"message": GENERIC_FAILURE}, status=400)

    try:
        outcome = apply_gateway_response(GatewayResponse.from_params(params), source="return")
    except UnknownTransaction:
        return render(request, "payments/failure.html", {"message": GENERIC_FAILURE}, status=404)
    except AmountMismatch:
        return render(request, "payments/failure.html", {"message": GENERIC_FAILURE}, status=400)
    except DatabaseError:
        logger.exception("VNPay return could not be recorded for txn_ref=%s", params.get("vnp_TxnRef"))
        return render(request, "payments/failure.html", {"message": GENERIC_FAILURE}, status=500)

    url = reverse("orders:payment_result")
    return redirect(f"{url}?orderId={outcome.order.order_number}")


@require_GET
def vnpay_ipn_view(request):
    """Server-to-server notification (IPN). VNPay re-delivers on non-2xx or RspCode 99."""
    params = _verified_params(request)
    if params is None:
        return JsonResponse({"RspCode": "97", "Message": "Invalid signature"}, status=400)

    try:
        outcome = apply_gateway_response(GatewayResponse.from_params(params), source="ipn")
    except UnknownTransaction:
        return JsonResponse({"RspCode": "01", "Message": "Order not found"}, status=404)
    except AmountMismatch:
        return JsonResponse({"RspCode": "04", "Message": "Invalid amount"}, status=400)
    except DatabaseError:
        logger.exception("VNPay IPN could not be recorded for txn_ref=%s", params.get("vnp_TxnRef"))
        return JsonResponse({"RspCode": "99", "Message": "Unknown error"}, status=500)

    if outcome.is_duplicate:
        return JsonResponse({"RspCode": "02", "Message": "Order already confirmed"})
    return JsonResponse({"RspCode": "00", "Message": "Confirm Success"})
