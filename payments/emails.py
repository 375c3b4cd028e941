import logging
from typing import List, Optional

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    configured = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or [e for _, e in getattr(settings, "ADMINS", [])]
    recipients: List[str] = []
    for email in configured:
        if email and email.lower() not in {r.lower() for r in recipients}:
            recipients.append(email)
    return recipients


def _send(subject: str, template: str, context: dict, to: List[str], html_template: Optional[str] = None):
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    msg = EmailMultiAlternatives(subject, render_to_string(template, context), from_email, to)
    if html_template:
        msg.attach_alternative(render_to_string(html_template, context), "text/html")
    msg.send(fail_silently=_fail_silently())


def send_payment_confirmation(*, order) -> None:
    """Mail the customer a receipt and notify the shop for a paid order.

    Never raises: a broken mail server must not undo a recorded payment.
    """
    try:
        details = order.payment_details or {}
        context = {
            "order": order,
            "order_number": order.order_number,
            "amount": order.total_amount,
            "transaction_no": details.get("transaction_no", ""),
            "items": list(order.items.select_related("product")),
            "site_url": getattr(settings, "SITE_URL", ""),
        }
    except Exception:
        logger.exception("Could not build payment e-mails for order=%s", getattr(order, "order_number", None))
        return

    if order.customer_email:
        try:
            _send(
                f"Xác nhận thanh toán đơn hàng {order.order_number}",
                "emails/payment_receipt_customer.txt",
                context,
                [order.customer_email],
                html_template="emails/payment_receipt_customer.html",
            )
        except Exception:
            logger.exception("Failed to send payment receipt for order %s", order.order_number)

    admins = _admin_recipients()
    if admins:
        try:
            _send(
                f"[LocalShop] Đơn hàng {order.order_number} đã thanh toán ({order.total_amount} VND)",
                "emails/payment_notification_admin.txt",
                context,
                admins,
            )
        except Exception:
            logger.exception("Failed to send payment notification for order %s", order.order_number)
