import hashlib
import hmac
import itertools
from datetime import datetime, timezone
from unittest.mock import patch
from urllib.parse import parse_qsl

import requests
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase

from .integrations.vnpay import (
    QUERY_REQUEST_FIELDS, QUERY_RESPONSE_FIELDS, GatewayResponse, VNPayClient,
    VNPayConfig, VNPayError, VNPaySigner, build_payment_request, build_payment_url, canonicalize,
    format_vnpay_date, parse_vnpay_date, scale_amount,
)
from .utils import describe_response_code, gen_txn_ref

SECRET = "TESTSECRETKEY0123456789ABCDEFGHI"
FIXED_NOW = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)  # 1700000000


def make_config(**overrides):
    values = {
        "tmn_code": "TESTTMN1",
        "hash_secret": SECRET,
        "payment_url": "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        "return_url": "https://shop.example.com/payments/vnpay/return",
        "api_url": "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
    }
    values.update(overrides)
    return VNPayConfig(**values)


class CanonicalizeTests(SimpleTestCase):
    def test_sorted_and_joined(self):
        self.assertEqual(canonicalize({"vnp_TxnRef": "A1", "vnp_Amount": 100}), "vnp_Amount=100&vnp_TxnRef=A1")

    def test_insertion_order_does_not_matter(self):
        fields = [("vnp_TxnRef", "ORDER_1"), ("vnp_Amount", 15000000), ("vnp_Locale", "vn"), ("vnp_OrderInfo", "Thanh toan")]
        results = {canonicalize(dict(p)) for p in itertools.permutations(fields)}
        self.assertEqual(len(results), 1)

    def test_sort_is_ordinal(self):
        self.assertEqual(canonicalize({"vnp_a": "1", "vnp_B": "2"}), "vnp_B=2&vnp_a=1")

    def test_signature_fields_are_dropped(self):
        params = {"vnp_Amount": "100", "vnp_SecureHash": "abc", "vnp_SecureHashType": "HmacSHA512"}
        self.assertEqual(canonicalize(params), "vnp_Amount=100")

    def test_values_are_percent_encoded(self):
        params = {
            "vnp_OrderInfo": "Thanh toan don hang #12",
            "vnp_ReturnUrl": "https://shop.example.com/r?x=1",
        }
        self.assertEqual(
            canonicalize(params),
            "vnp_OrderInfo=Thanh+toan+don+hang+%2312&vnp_ReturnUrl=https%3A%2F%2Fshop.example.com%2Fr%3Fx%3D1",
        )

    def test_empty_value_kept_and_none_absent(self):
        self.assertEqual(canonicalize({"vnp_BankCode": "", "vnp_IpAddr": None, "vnp_Amount": 5}), "vnp_Amount=5&vnp_BankCode=")

    def test_accepts_pairs(self):
        self.assertEqual(canonicalize([("b", 2), ("a", 1)]), "a=1&b=2")


class SignerTests(SimpleTestCase):
    def setUp(self):
        self.signer = VNPaySigner(SECRET)
        self.params = {
            "vnp_Amount": "15000000",
            "vnp_BankCode": "NCB",
            "vnp_OrderInfo": "Thanh toan don hang LS1",
            "vnp_ResponseCode": "00",
            "vnp_TmnCode": "TESTTMN1",
            "vnp_TransactionNo": "14226112",
            "vnp_TxnRef": "ORDER_1700000000000",
        }

    def _signed(self):
        params = dict(self.params)
        params["vnp_SecureHash"] = self.signer.sign(canonicalize(params))
        return params

    def test_sign_is_lowercase_hmac_sha512(self):
        expected = hmac.new(SECRET.encode(), b"vnp_Amount=100", hashlib.sha512).hexdigest()
        digest = self.signer.sign("vnp_Amount=100")
        self.assertEqual(digest, expected)
        self.assertEqual(len(digest), 128)
        self.assertEqual(digest, digest.lower())

    def test_round_trip(self):
        self.assertTrue(self.signer.verify(self._signed()))

    def test_secure_hash_type_is_ignored(self):
        params = self._signed()
        params["vnp_SecureHashType"] = "HmacSHA512"
        self.assertTrue(self.signer.verify(params))

    def test_tampering_any_field_fails(self):
        signed = self._signed()
        for key in self.params:
            with self.subTest(field=key):
                tampered = dict(signed)
                tampered[key] = tampered[key] + "1"
                self.assertFalse(self.signer.verify(tampered))

    def test_added_field_fails(self):
        params = self._signed()
        params["vnp_Extra"] = "x"
        self.assertFalse(self.signer.verify(params))

    def test_wrong_secret_fails(self):
        self.assertFalse(VNPaySigner("another-secret").verify(self._signed()))

    def test_missing_hash_fails(self):
        self.assertFalse(self.signer.verify(dict(self.params)))

    def test_comparison_is_case_sensitive(self):
        params = self._signed()
        params["vnp_SecureHash"] = params["vnp_SecureHash"].upper()
        self.assertFalse(self.signer.verify(params))

    def test_non_ascii_hash_is_rejected(self):
        params = self._signed()
        params["vnp_SecureHash"] = "ä" * 128
        self.assertFalse(self.signer.verify(params))

    def test_verify_does_not_mutate_input(self):
        params = self._signed()
        before = dict(params)
        self.signer.verify(params)
        self.assertEqual(params, before)

    def test_empty_secret_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            VNPaySigner("")


class PaymentRequestBuilderTests(SimpleTestCase):
    def test_scenario_amount_is_scaled_by_100(self):
        config = make_config()
        req = build_payment_request(config, 150000, "Thanh toan don hang LS1", txn_ref="ORDER_1700000000000", now=FIXED_NOW)

        self.assertEqual(req.amount, 15000000)
        self.assertIn("vnp_Amount=15000000", canonicalize(req.to_pairs()))
        self.assertEqual(req.txn_ref, "ORDER_1700000000000")
        self.assertEqual(req.create_date, "20231115051320")
        self.assertEqual(req.expire_date, "20231115052820")

    def test_fields(self):
        req = build_payment_request(make_config(), 1000, "Thanh toan", txn_ref="T1", ip_addr="10.0.0.1", now=FIXED_NOW)
        fields = dict(req.to_pairs())
        self.assertEqual(fields["vnp_Version"], "2.1.0")
        self.assertEqual(fields["vnp_Command"], "pay")
        self.assertEqual(fields["vnp_TmnCode"], "TESTTMN1")
        self.assertEqual(fields["vnp_CurrCode"], "VND")
        self.assertEqual(fields["vnp_Locale"], "vn")
        self.assertEqual(fields["vnp_OrderType"], "other")
        self.assertEqual(fields["vnp_ReturnUrl"], "https://shop.example.com/payments/vnpay/return")
        self.assertEqual(fields["vnp_IpAddr"], "10.0.0.1")
        self.assertNotIn("vnp_BankCode", fields)

    def test_optional_ip_is_omitted(self):
        req = build_payment_request(make_config(), 1000, "Thanh toan", txn_ref="T1", now=FIXED_NOW)
        self.assertNotIn("vnp_IpAddr", dict(req.to_pairs()))

    def test_generates_txn_ref(self):
        req = build_payment_request(make_config(), 1000, "Thanh toan", now=FIXED_NOW)
        self.assertTrue(req.txn_ref.startswith("ORDER_"))
        self.assertTrue(req.txn_ref[len("ORDER_"):].isdigit())

    def test_request_is_immutable(self):
        req = build_payment_request(make_config(), 1000, "Thanh toan", txn_ref="T1", now=FIXED_NOW)
        with self.assertRaises(Exception):
            req.amount = 1

    def test_invalid_amounts(self):
        for amount in (0, -5, "abc", None):
            with self.subTest(amount=amount), self.assertRaises(VNPayError):
                build_payment_request(make_config(), amount, "Thanh toan", now=FIXED_NOW)

    def test_blank_description_rejected(self):
        with self.assertRaises(VNPayError):
            build_payment_request(make_config(), 1000, "  ", now=FIXED_NOW)

    def test_url_is_signed_over_preceding_fields(self):
        config = make_config()
        req = build_payment_request(config, 150000, "Thanh toan don hang LS1", txn_ref="ORDER_1700000000000", ip_addr="127.0.0.1", now=FIXED_NOW)
        url = build_payment_url(config, req)

        base, query = url.split("?", 1)
        self.assertEqual(base, config.payment_url)
        signed_part, signature = query.rsplit("&vnp_SecureHash=", 1)
        self.assertEqual(signed_part, canonicalize(req.to_pairs()))
        self.assertEqual(signature, VNPaySigner(SECRET).sign(signed_part))

        params = dict(parse_qsl(query, keep_blank_values=True))
        self.assertEqual(list(params)[-1], "vnp_SecureHash")
        self.assertEqual(params["vnp_OrderInfo"], "Thanh toan don hang LS1")
        self.assertTrue(VNPaySigner(SECRET).verify(params))


class AmountAndDateTests(SimpleTestCase):
    def test_scale_rounds_half_up(self):
        self.assertEqual(scale_amount("10.005"), 1001)
        self.assertEqual(scale_amount(150000), 15000000)

    def test_date_round_trip(self):
        value = format_vnpay_date(FIXED_NOW)
        self.assertEqual(value, "20231115051320")
        self.assertEqual(parse_vnpay_date(value), FIXED_NOW)
        self.assertIsNone(parse_vnpay_date("not-a-date"))


class ConfigTests(SimpleTestCase):
    def test_from_settings(self):
        config = VNPayConfig.from_settings()
        self.assertEqual(config.tmn_code, "TESTTMN1")
        self.assertEqual(config.expire_minutes, 15)

    def test_missing_secret(self):
        with self.assertLogs("payments.integrations.vnpay", level="ERROR"):
            with self.assertRaises(ImproperlyConfigured):
                VNPayConfig.from_settings({"TMN_CODE": "X", "PAYMENT_URL": "https://p", "RETURN_URL": "https://r"})

    def test_secret_not_in_repr(self):
        self.assertNotIn(SECRET, repr(make_config()))


class GatewayResponseTests(SimpleTestCase):
    def test_from_params(self):
        resp = GatewayResponse.from_params({
            "vnp_TxnRef": "T1", "vnp_ResponseCode": "00", "vnp_TransactionNo": "99",
            "vnp_Amount": "15000000", "vnp_SecureHash": "h",
        })
        self.assertEqual(resp.amount, 15000000)
        self.assertTrue(resp.is_success)
        self.assertEqual(resp.raw["vnp_SecureHash"], "h")

    def test_failure_codes(self):
        self.assertFalse(GatewayResponse.from_params({"vnp_TxnRef": "T1", "vnp_ResponseCode": "24"}).is_success)
        self.assertFalse(GatewayResponse.from_params(
            {"vnp_TxnRef": "T1", "vnp_ResponseCode": "00", "vnp_TransactionStatus": "02"}
        ).is_success)

    def test_unparseable_amount(self):
        self.assertEqual(GatewayResponse.from_params({"vnp_Amount": "12a"}).amount, -1)


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class QueryClientTests(SimpleTestCase):
    def setUp(self):
        self.client_ = VNPayClient(make_config())
        self.signer = VNPaySigner(SECRET)

    def _response_data(self, **overrides):
        data = {
            "vnp_ResponseId": "r1", "vnp_Command": "querydr", "vnp_ResponseCode": "00",
            "vnp_Message": "QueryDR Success", "vnp_TmnCode": "TESTTMN1", "vnp_TxnRef": "ORDER_1",
            "vnp_Amount": "15000000", "vnp_BankCode": "NCB", "vnp_PayDate": "20231115052000",
            "vnp_TransactionNo": "14226112", "vnp_TransactionType": "01",
            "vnp_TransactionStatus": "00", "vnp_OrderInfo": "Thanh toan", "vnp_PromotionCode": "",
            "vnp_PromotionAmount": "",
        }
        data.update(overrides)
        data["vnp_SecureHash"] = self.signer.sign("|".join(str(data[k]) for k in QUERY_RESPONSE_FIELDS))
        return data

    def _query(self):
        return self.client_.query_transaction(
            txn_ref="ORDER_1", order_info="Thanh toan", transaction_date="20231115051320",
            ip_addr="10.0.0.1", now=FIXED_NOW,
        )

    def test_request_is_signed_over_pipe_joined_fields(self):
        with patch("payments.integrations.vnpay.requests.post", return_value=FakeResponse(data=self._response_data())) as post:
            self._query()

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction")
        payload = post.call_args.kwargs["json"]
        self.assertEqual(payload["vnp_Command"], "querydr")
        self.assertEqual(payload["vnp_TransactionDate"], "20231115051320")
        self.assertEqual(payload["vnp_CreateDate"], "20231115051320")
        data = "|".join(payload[k] for k in QUERY_REQUEST_FIELDS)
        self.assertEqual(payload["vnp_SecureHash"], hmac.new(SECRET.encode(), data.encode(), hashlib.sha512).hexdigest())
        self.assertEqual(post.call_args.kwargs["timeout"], 30)

    def test_returns_verified_data(self):
        body = self._response_data()
        with patch("payments.integrations.vnpay.requests.post", return_value=FakeResponse(data=body)):
            self.assertEqual(self._query(), body)

    def test_bad_response_signature(self):
        body = self._response_data()
        body["vnp_TransactionStatus"] = "01"
        with patch("payments.integrations.vnpay.requests.post", return_value=FakeResponse(data=body)):
            with self.assertLogs("payments.integrations.vnpay", level="WARNING"):
                with self.assertRaises(VNPayError):
                    self._query()

    def test_transport_error(self):
        with patch("payments.integrations.vnpay.requests.post", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(VNPayError):
                self._query()

    def test_http_error(self):
        with patch("payments.integrations.vnpay.requests.post", return_value=FakeResponse(status_code=502, text="bad gateway")):
            with self.assertRaisesMessage(VNPayError, "HTTP 502"):
                self._query()

    def test_non_json(self):
        with patch("payments.integrations.vnpay.requests.post", return_value=FakeResponse(text="<html>")):
            with self.assertRaises(VNPayError):
                self._query()

    def test_requires_api_url(self):
        with self.assertRaises(ImproperlyConfigured):
            VNPayClient(make_config(api_url=""))


class UtilsTests(SimpleTestCase):
    def test_describe_known_and_unknown_codes(self):
        self.assertEqual(describe_response_code("24"), "Bạn đã hủy giao dịch.")
        self.assertNotIn("ZZ", describe_response_code("ZZ"))

    def test_gen_txn_ref(self):
        ref = gen_txn_ref()
        self.assertTrue(ref.startswith("ORDER_"))
        self.assertLessEqual(len(ref), 100)
