import logging

from django.db import DatabaseError, transaction

from .models import Order, OrderItem
from .utils import generate_order_number

logger = logging.getLogger(__name__)


class OrderCreationError(Exception): pass


def create_order(*, customer_name, customer_phone, shipping_address, items, total_amount,
                 customer_email="", payment_method="cod", notes="", user=None) -> Order:
    """Create the order header and its line items as one unit.

    The header is written first; if the items cannot be inserted the header is
    deleted again, so a header without items is never left behind. Either way
    the caller gets a single :class:`OrderCreationError`.
    """
    try:
        order = Order.objects.create(
            order_number=generate_order_number(),
            user=user,
            customer_name=customer_name,
            customer_email=customer_email or "",
            customer_phone=customer_phone,
            shipping_address=shipping_address,
            notes=notes or "",
            total_amount=total_amount,
            payment_method=payment_method,
            payment_status="pending",
            status="pending",
        )
    except DatabaseError as e:
        logger.exception("Error creating order for %s", customer_phone)
        raise OrderCreationError("Could not create order") from e

    rows = [
        OrderItem(order=order, product_id=i["product_id"], quantity=i["quantity"], price=i["price"])
        for i in items
    ]
    try:
        with transaction.atomic():
            OrderItem.objects.bulk_create(rows)
    except DatabaseError as e:
        logger.error("Error creating items for order %s, rolling back: %s", order.order_number, e)
        try:
            order.delete()
        except DatabaseError:
            logger.exception("Rollback of order %s failed", order.order_number)
        raise OrderCreationError("Could not create order items") from e

    logger.info("Order %s created with %d items", order.order_number, len(rows))
    return order


def update_order_status(order: Order, status: str, payment_status=None) -> Order:
    """Back-office status change.

    Cash-on-delivery orders derive the payment status from the workflow
    status; other methods take the given ``payment_status`` (default pending).
    """
    if status not in dict(Order.STATUS):
        raise ValueError(f"Unknown order status: {status}")
    if payment_status and payment_status not in dict(Order.PAYMENT_STATUS):
        raise ValueError(f"Unknown payment status: {payment_status}")

    if order.payment_method == "cod":
        if status == "completed":
            payment_status = "paid"
        elif status == "cancelled":
            payment_status = "failed"
        else:
            payment_status = "pending"
    else:
        payment_status = payment_status or "pending"

    order.status = status
    order.payment_status = payment_status
    order.save(update_fields=["status", "payment_status", "updated_at"])
    return order
