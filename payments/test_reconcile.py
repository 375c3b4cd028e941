from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from orders.models import Order
from .integrations.vnpay import VNPayError
from .models import PaymentHistory, VNPayTransaction

QUERY = "payments.management.commands.reconcile_vnpay_transactions.VNPayClient.query_transaction"


class ReconcileVNPayTransactionsTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(
            order_number="LS231115000002QWERTY",
            customer_name="Tran Thi B",
            customer_phone="0987654321",
            shipping_address="2 Le Loi, Da Nang",
            total_amount=Decimal("99000"),
            payment_method="vnpay",
        )
        self.txn = self._txn("ORDER_1700000000001", minutes_ago=30)

    def _txn(self, txn_ref, minutes_ago):
        txn = VNPayTransaction.objects.create(
            order=self.order,
            txn_ref=txn_ref,
            amount=Decimal("99000"),
            order_info=f"Thanh toan don hang {self.order.order_number}",
            create_date="20231115051320",
            ip_addr="10.0.0.5",
        )
        VNPayTransaction.objects.filter(pk=txn.pk).update(
            created_at=timezone.now() - timedelta(minutes=minutes_ago)
        )
        return txn

    def _run(self, *args):
        out = StringIO()
        call_command("reconcile_vnpay_transactions", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def _query_result(self, **overrides):
        data = {
            "vnp_ResponseId": "b5a3c1",
            "vnp_Command": "querydr",
            "vnp_ResponseCode": "00",
            "vnp_Message": "QueryDR Success",
            "vnp_TmnCode": "TESTTMN1",
            "vnp_TxnRef": self.txn.txn_ref,
            "vnp_Amount": "9900000",
            "vnp_BankCode": "NCB",
            "vnp_PayDate": "20231115052000",
            "vnp_TransactionNo": "14226999",
            "vnp_TransactionType": "01",
            "vnp_TransactionStatus": "00",
        }
        data.update(overrides)
        return data

    def test_nothing_to_do(self):
        VNPayTransaction.objects.all().delete()
        self.assertIn("No stale VNPay transactions.", self._run())

    def test_no_query_expires_stale_transactions(self):
        with patch(QUERY) as query:
            out = self._run("--no-query")
        query.assert_not_called()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "expired")
        self.assertIn("Checked 1, resolved 0, expired 1.", out)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "pending")

    def test_recent_transactions_are_left_alone(self):
        recent = self._txn("ORDER_1700000000002", minutes_ago=2)
        self._run("--no-query")
        recent.refresh_from_db()
        self.assertEqual(recent.status, "pending")

    def test_older_than_option(self):
        recent = self._txn("ORDER_1700000000003", minutes_ago=2)
        self._run("--no-query", "--older-than-minutes", "1")
        recent.refresh_from_db()
        self.assertEqual(recent.status, "expired")

    def test_settled_payment_is_applied(self):
        with patch(QUERY, return_value=self._query_result()) as query:
            out = self._run()

        query.assert_called_once_with(
            txn_ref=self.txn.txn_ref,
            order_info=self.txn.order_info,
            transaction_date="20231115051320",
            ip_addr="10.0.0.5",
        )
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "success")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "paid")
        self.assertEqual(PaymentHistory.objects.get().transaction_no, "14226999")
        self.assertIn("Checked 1, resolved 1, expired 0.", out)

    def test_declined_payment_is_applied(self):
        with patch(QUERY, return_value=self._query_result(vnp_TransactionStatus="02")):
            self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, "failed")

    def test_not_found_at_gateway_expires(self):
        with patch(QUERY, return_value=self._query_result(vnp_ResponseCode="91", vnp_TransactionStatus="")):
            self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "expired")

    def test_unfinished_payment_expires(self):
        with patch(QUERY, return_value=self._query_result(vnp_TransactionStatus="01")):
            self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "expired")

    def test_undecided_status_is_left_pending(self):
        with patch(QUERY, return_value=self._query_result(vnp_TransactionStatus="05")):
            out = self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "pending")
        self.assertIn("left pending", out)

    def test_gateway_error_is_left_pending(self):
        with patch(QUERY, side_effect=VNPayError("VNPay query failed")):
            out = self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "pending")
        self.assertIn("VNPay query failed", out)
        self.assertIn("Checked 1, resolved 0, expired 0.", out)

    def test_amount_mismatch_is_reported_not_applied(self):
        with patch(QUERY, return_value=self._query_result(vnp_Amount="100")):
            with self.assertLogs("payments.services", level="WARNING"):
                out = self._run()
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "pending")
        self.assertIn("rejected (AmountMismatch)", out)
