import json
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase

from catalog.models import Category, Product
from .forms import EMPTY_CART, INVALID_EMAIL, INVALID_ITEM, INVALID_PHONE, INVALID_TOTAL, MISSING_FIELDS
from .models import Order, OrderItem
from .services import OrderCreationError, create_order, update_order_status
from .utils import generate_order_number


class CatalogMixin:
    def setUp(self):
        category = Category.objects.create(name="Phụ kiện", slug="phu-kien")
        self.cable = Product.objects.create(category=category, name="Cáp USB-C", slug="cap-usb-c", price=Decimal("50000"))
        self.charger = Product.objects.create(category=category, name="Sạc nhanh", slug="sac-nhanh", price=Decimal("250000"))

    def _items(self, *extra):
        return [
            {"product_id": self.cable.pk, "quantity": 2, "price": Decimal("50000")},
            {"product_id": self.charger.pk, "quantity": 1, "price": Decimal("250000")},
            *extra,
        ]


class CreateOrderServiceTests(CatalogMixin, TestCase):
    def test_creates_header_and_items(self):
        order = create_order(
            customer_name="Le Van C",
            customer_phone="0901234567",
            shipping_address="3 Hai Ba Trung, TP HCM",
            items=self._items(),
            total_amount=Decimal("350000"),
        )
        self.assertTrue(order.order_number.startswith("LS"))
        self.assertEqual(order.status, "pending")
        self.assertEqual(order.payment_status, "pending")
        self.assertEqual(order.payment_method, "cod")
        self.assertEqual(order.items.count(), 2)

    def test_item_failure_removes_header(self):
        bad = {"product_id": self.cable.pk, "quantity": 0, "price": Decimal("50000")}
        with self.assertLogs("orders.services", level="ERROR") as logs:
            with self.assertRaises(OrderCreationError):
                create_order(
                    customer_name="Le Van C",
                    customer_phone="0901234567",
                    shipping_address="3 Hai Ba Trung, TP HCM",
                    items=self._items(bad),
                    total_amount=Decimal("350000"),
                )
        self.assertIn("rolling back", logs.output[0])
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderItem.objects.count(), 0)

    def test_negative_price_is_rejected(self):
        bad = {"product_id": self.cable.pk, "quantity": 1, "price": Decimal("-1")}
        with self.assertLogs("orders.services", level="ERROR"):
            with self.assertRaises(OrderCreationError):
                create_order(
                    customer_name="Le Van C",
                    customer_phone="0901234567",
                    shipping_address="3 Hai Ba Trung, TP HCM",
                    items=[bad],
                    total_amount=Decimal("1000"),
                )
        self.assertFalse(Order.objects.exists())

    def test_header_failure(self):
        with patch.object(Order.objects, "create", side_effect=DatabaseError("locked")):
            with self.assertLogs("orders.services", level="ERROR"):
                with self.assertRaises(OrderCreationError):
                    create_order(
                        customer_name="Le Van C",
                        customer_phone="0901234567",
                        shipping_address="3 Hai Ba Trung, TP HCM",
                        items=self._items(),
                        total_amount=Decimal("350000"),
                    )
        self.assertFalse(OrderItem.objects.exists())


class CreateOrderViewTests(CatalogMixin, TestCase):
    url = "/orders/create"

    def _payload(self, **overrides):
        payload = {
            "customer_name": "Pham Thi D",
            "customer_email": "d@example.com",
            "customer_phone": "0911222333",
            "shipping_address": "4 Nguyen Hue, TP HCM",
            "total_amount": 350000,
            "payment_method": "vnpay",
            "items": [
                {"product_id": self.cable.pk, "quantity": 2, "price": 50000},
                {"id": self.charger.pk, "quantity": 1, "price": 250000},
            ],
        }
        payload.update(overrides)
        return payload

    def _post(self, payload):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    def test_success(self):
        resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["message"], "Đặt hàng thành công")
        order = Order.objects.get(order_number=data["order"]["id"])
        self.assertEqual(order.payment_method, "vnpay")
        self.assertEqual(order.items.count(), 2)
        self.assertEqual(data["redirect"], f"/orders/success?orderId={order.order_number}")

    def test_payment_method_defaults_to_cod(self):
        payload = self._payload()
        del payload["payment_method"]
        resp = self._post(payload)
        self.assertEqual(Order.objects.get(order_number=resp.json()["order"]["id"]).payment_method, "cod")

    def test_validation_messages(self):
        cases = [
            (self._payload(customer_name=""), MISSING_FIELDS),
            (self._payload(items=None), MISSING_FIELDS),
            (self._payload(customer_email="not-an-email"), INVALID_EMAIL),
            (self._payload(customer_phone="12345"), INVALID_PHONE),
            (self._payload(items=[]), EMPTY_CART),
            (self._payload(total_amount=0), INVALID_TOTAL),
            (self._payload(items=[{"product_id": 999999, "quantity": 1, "price": 1}]), INVALID_ITEM),
            (self._payload(items=[{"product_id": self.cable.pk, "quantity": "many", "price": 1}]), INVALID_ITEM),
        ]
        for payload, message in cases:
            with self.subTest(message=message):
                resp = self._post(payload)
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["error"], message)
        self.assertFalse(Order.objects.exists())

    def test_invalid_json(self):
        resp = self.client.post(self.url, data="{", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_item_failure_rolls_back(self):
        items = self._payload()["items"] + [{"product_id": self.cable.pk, "quantity": 0, "price": 50000}]
        with self.assertLogs("orders.services", level="ERROR"):
            resp = self._post(self._payload(items=items))
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"], "Lỗi khi tạo đơn hàng")
        self.assertFalse(Order.objects.exists())
        self.assertFalse(OrderItem.objects.exists())

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(self.url).status_code, 405)


class UpdateOrderStatusTests(TestCase):
    def _order(self, method):
        return Order.objects.create(
            order_number=generate_order_number(),
            customer_name="Vo Van E",
            customer_phone="0933444555",
            shipping_address="5 Tran Phu, Nha Trang",
            total_amount=Decimal("120000"),
            payment_method=method,
        )

    def test_cod_payment_follows_workflow(self):
        order = self._order("cod")
        expected = {
            "processing": "pending",
            "shipping": "pending",
            "completed": "paid",
            "cancelled": "failed",
            "pending": "pending",
        }
        for status, payment_status in expected.items():
            with self.subTest(status=status):
                update_order_status(order, status, payment_status="paid")
                order.refresh_from_db()
                self.assertEqual(order.status, status)
                self.assertEqual(order.payment_status, payment_status)

    def test_online_payment_uses_given_status(self):
        order = self._order("vnpay")
        update_order_status(order, "shipping", "paid")
        self.assertEqual(order.payment_status, "paid")
        update_order_status(order, "cancelled")
        self.assertEqual(order.payment_status, "pending")

    def test_unknown_status(self):
        order = self._order("cod")
        with self.assertRaises(ValueError):
            update_order_status(order, "lost")
        with self.assertRaises(ValueError):
            update_order_status(order, "pending", "refunded")


class UpdateStatusViewTests(TestCase):
    url = "/orders/update-status"

    def setUp(self):
        User = get_user_model()
        self.staff = User.objects.create_user("staff", password="pw", is_staff=True)
        self.customer = User.objects.create_user("customer", password="pw")
        self.order = Order.objects.create(
            order_number="LS231115000003ZXCVBN",
            customer_name="Do Thi F",
            customer_phone="0944555666",
            shipping_address="6 Bach Dang, Hai Phong",
            total_amount=Decimal("80000"),
        )

    def _post(self, payload):
        return self.client.post(self.url, data=json.dumps(payload), content_type="application/json")

    def test_staff_can_update(self):
        self.client.force_login(self.staff)
        resp = self._post({"orderId": self.order.order_number, "status": "completed"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["payment_status"], "paid")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "completed")

    def test_customer_is_redirected_to_login(self):
        self.client.force_login(self.customer)
        resp = self._post({"orderId": self.order.order_number, "status": "completed"})
        self.assertEqual(resp.status_code, 302)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "pending")

    def test_missing_fields(self):
        self.client.force_login(self.staff)
        resp = self._post({"orderId": self.order.order_number})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "Missing required fields")

    def test_invalid_status(self):
        self.client.force_login(self.staff)
        resp = self._post({"orderId": self.order.order_number, "status": "lost"})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_order(self):
        self.client.force_login(self.staff)
        resp = self._post({"orderId": "LS000", "status": "completed"})
        self.assertEqual(resp.status_code, 404)


class OrderPagesTests(CatalogMixin, TestCase):
    def setUp(self):
        super().setUp()
        User = get_user_model()
        self.alice = User.objects.create_user("alice", password="pw")
        self.bob = User.objects.create_user("bob", password="pw")
        self.order = create_order(
            customer_name="Alice",
            customer_phone="0955666777",
            shipping_address="7 Ly Thuong Kiet, Hue",
            items=self._items(),
            total_amount=Decimal("350000"),
            user=self.alice,
        )

    def test_success_page(self):
        resp = self.client.get("/orders/success", {"orderId": self.order.order_number})
        self.assertContains(resp, self.order.order_number)
        self.assertContains(resp, "Cáp USB-C")

    def test_success_page_unknown_order(self):
        resp = self.client.get("/orders/success", {"orderId": "LS-missing"})
        self.assertEqual(resp.status_code, 404)

    def test_my_orders_requires_login(self):
        resp = self.client.get("/orders/my")
        self.assertEqual(resp.status_code, 302)
        self.assertIn("/admin/login/", resp["Location"])

    def test_my_orders_only_lists_own_orders(self):
        self.client.force_login(self.bob)
        resp = self.client.get("/orders/my")
        self.assertNotContains(resp, self.order.order_number)
        self.assertContains(resp, "Bạn chưa có đơn hàng nào.")

        self.client.force_login(self.alice)
        resp = self.client.get("/orders/my")
        self.assertContains(resp, self.order.order_number)
