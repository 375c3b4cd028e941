import json
from decimal import Decimal
from unittest.mock import patch

from django.conf import settings
from django.core import mail
from django.db import DatabaseError
from django.test import TestCase, override_settings

from catalog.models import Category, Product
from orders.models import Order, OrderItem
from .integrations.vnpay import VNPaySigner, canonicalize
from .models import PaymentHistory, VNPayTransaction

TXN_REF = "ORDER_1700000000000"
RETURN_URL = "/payments/vnpay/return"
IPN_URL = "/payments/vnpay/ipn"


class VNPayCallbackTestBase(TestCase):
    def setUp(self):
        category = Category.objects.create(name="Phone", slug="phone")
        product = Product.objects.create(category=category, name="Galaxy S24", slug="galaxy-s24", price=Decimal("150000"))
        self.order = Order.objects.create(
            order_number="LS231115000001ABCDEF",
            customer_name="Nguyen Van A",
            customer_email="a@example.com",
            customer_phone="0912345678",
            shipping_address="1 Trang Tien, Ha Noi",
            total_amount=Decimal("150000"),
            payment_method="vnpay",
        )
        OrderItem.objects.create(order=self.order, product=product, quantity=1, price=Decimal("150000"))
        self.txn = VNPayTransaction.objects.create(
            order=self.order,
            txn_ref=TXN_REF,
            amount=Decimal("150000"),
            order_info=f"Thanh toan don hang {self.order.order_number}",
            create_date="20231115051320",
        )

    def _signed(self, secret=None, **overrides):
        params = {
            "vnp_Amount": "15000000",
            "vnp_BankCode": "NCB",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": f"Thanh toan don hang {self.order.order_number}",
            "vnp_PayDate": "20231115052000",
            "vnp_ResponseCode": "00",
            "vnp_TmnCode": "TESTTMN1",
            "vnp_TransactionNo": "14226112",
            "vnp_TransactionStatus": "00",
            "vnp_TxnRef": TXN_REF,
        }
        params.update(overrides)
        signer = VNPaySigner(secret or settings.VNPAY["HASH_SECRET"])
        params["vnp_SecureHash"] = signer.sign(canonicalize(params))
        params["vnp_SecureHashType"] = "HmacSHA512"
        return params

    def assertUnchanged(self):
        self.order.refresh_from_db()
        self.txn.refresh_from_db()
        self.assertEqual(self.order.payment_status, "pending")
        self.assertEqual(self.order.status, "pending")
        self.assertIsNone(self.order.payment_details)
        self.assertEqual(self.txn.status, "pending")
        self.assertEqual(PaymentHistory.objects.count(), 0)


class VNPayReturnTests(VNPayCallbackTestBase):
    def test_successful_payment(self):
        resp = self.client.get(RETURN_URL, self._signed())

        self.assertRedirects(
            resp, f"/orders/payment-result?orderId={self.order.order_number}", fetch_redirect_response=False
        )
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")
        self.assertEqual(self.order.status, "processing")
        self.assertEqual(self.order.payment_details["transaction_no"], "14226112")
        self.assertIn("payment_date", self.order.payment_details)

        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "success")
        self.assertEqual(self.txn.response_code, "00")
        self.assertEqual(self.txn.bank_code, "NCB")

        history = PaymentHistory.objects.get()
        self.assertEqual(history.status, "success")
        self.assertEqual(history.amount, Decimal("150000"))
        self.assertEqual(history.transaction_no, "14226112")
        self.assertEqual(history.payment_details["vnp_TxnRef"], TXN_REF)

    def test_failed_payment(self):
        resp = self.client.get(RETURN_URL, self._signed(vnp_ResponseCode="24", vnp_TransactionStatus="02", vnp_TransactionNo="0"))

        self.assertEqual(resp.status_code, 302)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "failed")
        self.assertEqual(self.order.status, "pending")
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "failed")
        self.assertEqual(PaymentHistory.objects.get().status, "failed")

    def test_forged_callback_is_rejected(self):
        with self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(RETURN_URL, self._signed(secret="not-the-merchant-secret"))

        self.assertEqual(resp.status_code, 400)
        self.assertTemplateUsed(resp, "payments/failure.html")
        self.assertUnchanged()

    def test_tampered_amount_is_rejected(self):
        params = self._signed()
        params["vnp_Amount"] = "100"
        with self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(RETURN_URL, params)
        self.assertEqual(resp.status_code, 400)
        self.assertUnchanged()

    def test_missing_signature_is_rejected(self):
        params = self._signed()
        del params["vnp_SecureHash"]
        with self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(RETURN_URL, params)
        self.assertEqual(resp.status_code, 400)
        self.assertUnchanged()

    def test_unknown_transaction(self):
        resp = self.client.get(RETURN_URL, self._signed(vnp_TxnRef="ORDER_0"))
        self.assertEqual(resp.status_code, 404)
        self.assertUnchanged()

    def test_receipt_sent_once_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.client.get(RETURN_URL, self._signed())
        with self.captureOnCommitCallbacks(execute=True):
            self.client.get(RETURN_URL, self._signed())

        receipts = [m for m in mail.outbox if m.to == ["a@example.com"]]
        self.assertEqual(len(receipts), 1)
        self.assertIn(self.order.order_number, receipts[0].subject)

    @override_settings(PAYMENTS_ADMIN_EMAILS=["ops@localshop.vn", "OPS@localshop.vn"])
    def test_shop_is_notified(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.client.get(RETURN_URL, self._signed())
        notices = [m for m in mail.outbox if m.to == ["ops@localshop.vn"]]
        self.assertEqual(len(notices), 1)
        self.assertIn("14226112", notices[0].body)

    def test_mail_failure_keeps_payment(self):
        with patch("payments.emails.EmailMultiAlternatives.send", side_effect=OSError("smtp down")):
            with self.assertLogs("payments.emails", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    resp = self.client.get(RETURN_URL, self._signed())
        self.assertEqual(resp.status_code, 302)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")

    def test_expired_transaction_can_still_be_paid(self):
        VNPayTransaction.objects.filter(pk=self.txn.pk).update(status="expired")
        self.client.get(RETURN_URL, self._signed())
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")


class VNPayIpnTests(VNPayCallbackTestBase):
    def test_confirms_payment(self):
        resp = self.client.get(IPN_URL, self._signed())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"RspCode": "00", "Message": "Confirm Success"})
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")

    def test_duplicate_delivery_is_a_no_op(self):
        first = self.client.get(IPN_URL, self._signed())
        second = self.client.get(IPN_URL, self._signed())

        self.assertEqual(first.json()["RspCode"], "00")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["RspCode"], "02")
        self.assertEqual(PaymentHistory.objects.count(), 1)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "processing")

    def test_return_then_ipn_records_once(self):
        self.client.get(RETURN_URL, self._signed())
        resp = self.client.get(IPN_URL, self._signed())
        self.assertEqual(resp.json()["RspCode"], "02")
        self.assertEqual(PaymentHistory.objects.count(), 1)

    def test_failed_second_attempt_keeps_order_paid(self):
        second = VNPayTransaction.objects.create(
            order=self.order,
            txn_ref="ORDER_1700000000999",
            amount=Decimal("150000"),
            order_info=self.txn.order_info,
            create_date="20231115051500",
        )
        self.client.get(IPN_URL, self._signed())
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self.client.get(
                IPN_URL, self._signed(vnp_TxnRef=second.txn_ref, vnp_ResponseCode="24", vnp_TransactionStatus="02")
            )

        self.assertEqual(resp.json()["RspCode"], "00")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")
        self.assertEqual(self.order.status, "processing")
        self.assertEqual(self.order.payment_details["txn_ref"], TXN_REF)
        second.refresh_from_db()
        self.assertEqual(second.status, "failed")
        self.assertEqual(PaymentHistory.objects.get(transaction=second).status, "failed")
        self.assertEqual(PaymentHistory.objects.count(), 2)

    def test_late_conflicting_outcome_does_not_overwrite(self):
        self.client.get(IPN_URL, self._signed())
        self.client.get(IPN_URL, self._signed(vnp_ResponseCode="24", vnp_TransactionStatus="02"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")
        self.assertEqual(PaymentHistory.objects.count(), 1)

    def test_invalid_signature(self):
        with self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(IPN_URL, self._signed(secret="forged"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["RspCode"], "97")
        self.assertUnchanged()

    def test_unknown_order(self):
        resp = self.client.get(IPN_URL, self._signed(vnp_TxnRef="ORDER_0"))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["RspCode"], "01")

    def test_amount_mismatch(self):
        with self.assertLogs("payments.services", level="WARNING"):
            resp = self.client.get(IPN_URL, self._signed(vnp_Amount="100"))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["RspCode"], "04")
        self.assertUnchanged()

    def test_storage_failure_allows_redelivery(self):
        with patch.object(PaymentHistory.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("payments.views", level="ERROR"):
                resp = self.client.get(IPN_URL, self._signed())

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["RspCode"], "99")
        self.assertUnchanged()

        retry = self.client.get(IPN_URL, self._signed())
        self.assertEqual(retry.json()["RspCode"], "00")
        self.assertEqual(PaymentHistory.objects.count(), 1)


class CreatePaymentTests(VNPayCallbackTestBase):
    def _post(self, payload):
        return self.client.post("/payments/vnpay/create", data=json.dumps(payload), content_type="application/json")

    def test_returns_signed_url_and_persists_pending_transaction(self):
        resp = self._post({"order_id": self.order.order_number, "amount": 1})

        self.assertEqual(resp.status_code, 200)
        url = resp.json()["paymentUrl"]
        self.assertTrue(url.startswith(settings.VNPAY["PAYMENT_URL"] + "?"))
        # amount comes from the stored order, not the request body
        self.assertIn("vnp_Amount=15000000", url)
        self.assertIn("vnp_SecureHash=", url)

        txn = VNPayTransaction.objects.get(txn_ref=resp.json()["txnRef"])
        self.assertEqual(txn.status, "pending")
        self.assertEqual(txn.order, self.order)
        self.assertEqual(txn.amount, Decimal("150000"))
        self.assertEqual(txn.ip_addr, "127.0.0.1")
        self.assertIn(f"vnp_TxnRef={txn.txn_ref}", url)

    def test_unknown_order(self):
        self.assertEqual(self._post({"order_id": "NOPE"}).status_code, 404)

    def test_missing_order_id(self):
        self.assertEqual(self._post({"amount": 100}).status_code, 400)

    def test_already_paid(self):
        Order.objects.filter(pk=self.order.pk).update(payment_status="paid")
        resp = self._post({"orderId": self.order.order_number})
        self.assertEqual(resp.status_code, 400)


class PaymentResultPageTests(VNPayCallbackTestBase):
    def test_success_page(self):
        self.client.get(RETURN_URL, self._signed())
        resp = self.client.get("/orders/payment-result", {"orderId": self.order.order_number})
        self.assertContains(resp, "Thanh toán thành công!")

    def test_failure_page_shows_localized_message(self):
        self.client.get(RETURN_URL, self._signed(vnp_ResponseCode="24", vnp_TransactionStatus="02"))
        resp = self.client.get("/orders/payment-result", {"orderId": self.order.order_number})
        self.assertContains(resp, "Thanh toán thất bại")
        self.assertContains(resp, "Bạn đã hủy giao dịch.")

    def test_query_string_cannot_claim_success(self):
        resp = self.client.get(
            "/orders/payment-result", {"orderId": self.order.order_number, "vnp_ResponseCode": "00"}
        )
        self.assertNotContains(resp, "Thanh toán thành công!")
        self.assertContains(resp, "Đang chờ xác nhận thanh toán")
