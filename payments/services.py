import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from orders.models import Order
from .emails import send_payment_confirmation
from .integrations.vnpay import (
    GatewayResponse, VNPayConfig, build_payment_request, build_payment_url, scale_amount,
)
from .models import PaymentHistory, VNPayTransaction

logger = logging.getLogger(__name__)

PAID = "paid"
FAILED = "failed"
ALREADY_PROCESSED = "already_processed"


class PaymentRejected(Exception):
    """A verified response that must not change any state."""


class UnknownTransaction(PaymentRejected): pass


class AmountMismatch(PaymentRejected): pass


class PaymentOutcome:
    def __init__(self, txn: VNPayTransaction, state: str):
        self.transaction = txn
        self.state = state

    @property
    def order(self) -> Order:
        return self.transaction.order

    @property
    def is_duplicate(self) -> bool:
        return self.state == ALREADY_PROCESSED

    def __repr__(self):
        return f"<PaymentOutcome {self.transaction.txn_ref} {self.state}>"


def order_info_for(order: Order) -> str:
    # VNPay rejects diacritics in vnp_OrderInfo
    return f"Thanh toan don hang {order.order_number}"


def start_payment(order: Order, *, ip_addr=None, config: VNPayConfig = None):
    """Persist a pending transaction for ``order`` and return ``(txn, redirect_url)``.

    The row is written before the URL is handed out so a fast return/IPN
    always finds it.
    """
    config = config or VNPayConfig.from_settings()
    req = build_payment_request(config, order.total_amount, order_info_for(order), ip_addr=ip_addr)
    txn = VNPayTransaction.objects.create(
        order=order,
        txn_ref=req.txn_ref,
        amount=order.total_amount,
        order_info=req.order_info,
        order_type=req.order_type,
        locale=req.locale,
        ip_addr=ip_addr or "",
        create_date=req.create_date,
        status=VNPayTransaction.PENDING,
    )
    logger.info("VNPay transaction %s created for order %s", txn.txn_ref, order.order_number)
    return txn, build_payment_url(config, req)


def apply_gateway_response(response: GatewayResponse, *, source: str = "return") -> PaymentOutcome:
    """Resolve a pending transaction from a signature-verified response.

    The caller must have verified the signature already. The status change is
    a single conditional UPDATE on the still-open transaction, so concurrent or
    repeated deliveries resolve it exactly once; later ones come back as
    ``already_processed`` without touching the order. Any database error rolls
    back the whole resolution and propagates.
    """
    try:
        txn = VNPayTransaction.objects.select_related("order").get(txn_ref=response.txn_ref)
    except VNPayTransaction.DoesNotExist:
        logger.warning("VNPay %s for unknown txn_ref=%s", source, response.txn_ref)
        raise UnknownTransaction(response.txn_ref)

    if response.amount is not None and response.amount != scale_amount(txn.amount):
        logger.warning(
            "VNPay %s amount mismatch for txn_ref=%s: expected=%s received=%s",
            source, txn.txn_ref, scale_amount(txn.amount), response.amount,
        )
        raise AmountMismatch(txn.txn_ref)

    paid = response.is_success
    now = timezone.now()
    with transaction.atomic():
        claimed = VNPayTransaction.objects.filter(
            pk=txn.pk, status__in=VNPayTransaction.OPEN_STATUSES
        ).update(
            status=VNPayTransaction.SUCCESS if paid else VNPayTransaction.FAILED,
            response_code=response.response_code,
            response_message=response.message[:255],
            transaction_no=response.transaction_no,
            bank_code=response.bank_code,
            pay_date=response.pay_date,
            response_payload=response.raw,
            updated_at=now,
        )
        if not claimed:
            txn.refresh_from_db()
            logger.info("VNPay %s for txn_ref=%s already processed (%s)", source, txn.txn_ref, txn.status)
            return PaymentOutcome(txn, ALREADY_PROCESSED)

        order = Order.objects.select_for_update().get(pk=txn.order_id)
        if paid:
            order.payment_status = "paid"
            if order.status == "pending":
                order.status = "processing"
            order.payment_details = {
                "transaction_no": response.transaction_no,
                "payment_date": now.isoformat(),
                "bank_code": response.bank_code,
                "txn_ref": txn.txn_ref,
            }
            order.save(update_fields=["payment_status", "status", "payment_details", "updated_at"])
        elif not order.is_paid:
            order.payment_status = "failed"
            order.save(update_fields=["payment_status", "updated_at"])
        else:
            logger.warning(
                "VNPay %s failure for txn_ref=%s ignored, order %s already paid",
                source, txn.txn_ref, order.order_number,
            )

        amount = Decimal(response.amount) / 100 if response.amount is not None else txn.amount
        PaymentHistory.objects.create(
            order=order,
            transaction=txn,
            method="VNPAY",
            amount=amount,
            status="success" if paid else "failed",
            transaction_no=response.transaction_no,
            payment_details=response.raw,
        )
        if paid:
            transaction.on_commit(lambda: send_payment_confirmation(order=order))

    txn.refresh_from_db()
    logger.info(
        "VNPay %s resolved txn_ref=%s order=%s -> %s (code=%s)",
        source, txn.txn_ref, order.order_number, txn.status, response.response_code,
    )
    return PaymentOutcome(txn, PAID if paid else FAILED)


def expire_transaction(txn: VNPayTransaction) -> bool:
    """Mark a still-pending transaction expired. Returns False if it was resolved meanwhile."""
    updated = VNPayTransaction.objects.filter(pk=txn.pk, status=VNPayTransaction.PENDING).update(
        status=VNPayTransaction.EXPIRED, updated_at=timezone.now()
    )
    if updated:
        logger.info("VNPay transaction %s expired", txn.txn_ref)
    return bool(updated)
