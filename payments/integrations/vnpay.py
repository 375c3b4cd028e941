"""VNPay gateway protocol.

Everything the shop needs to talk to VNPay lives here: canonicalising the
``vnp_*`` parameter set, HMAC-SHA512 signing and verification, building the
payment redirect URL and calling the ``querydr`` transaction status API.

Nothing in this module reads ``settings`` except :meth:`VNPayConfig.from_settings`;
the config object is passed explicitly to the signer, builder and client.
"""

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

import requests
from requests import RequestException
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone

from payments.utils import gen_txn_ref

logger = logging.getLogger(__name__)

VNP_VERSION = "2.1.0"
VNP_CURRENCY = "VND"
SECURE_HASH_FIELD = "vnp_SecureHash"
SECURE_HASH_TYPE_FIELD = "vnp_SecureHashType"
SUCCESS_CODE = "00"

# Provider timestamps: yyyyMMddHHmmss, GMT+7
DATE_FORMAT = "%Y%m%d%H%M%S"
VNPAY_TZ = ZoneInfo("Asia/Ho_Chi_Minh")

QUERY_REQUEST_FIELDS = (
    "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
    "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
)
QUERY_RESPONSE_FIELDS = (
    "vnp_ResponseId", "vnp_Command", "vnp_ResponseCode", "vnp_Message", "vnp_TmnCode",
    "vnp_TxnRef", "vnp_Amount", "vnp_BankCode", "vnp_PayDate", "vnp_TransactionNo",
    "vnp_TransactionType", "vnp_TransactionStatus", "vnp_OrderInfo",
    "vnp_PromotionCode", "vnp_PromotionAmount",
)


class VNPayError(Exception): pass


@dataclass(frozen=True)
class VNPayConfig:
    tmn_code: str
    hash_secret: str = field(repr=False)
    payment_url: str
    return_url: str
    api_url: str = ""
    locale: str = "vn"
    order_type: str = "other"
    expire_minutes: int = 15
    timeout: int = 30

    @classmethod
    def from_settings(cls, conf: Optional[dict] = None) -> "VNPayConfig":
        """Build the config from ``settings.VNPAY``.

        Raises :class:`ImproperlyConfigured` when the merchant code, hash
        secret, payment URL or return URL is missing.
        """
        conf = conf if conf is not None else getattr(settings, "VNPAY", {})
        for key in ("TMN_CODE", "HASH_SECRET", "PAYMENT_URL", "RETURN_URL"):
            if not conf.get(key):
                logger.error("VNPay %s missing in settings", key)
                raise ImproperlyConfigured(f"VNPAY['{key}'] setting is required")
        return cls(
            tmn_code=conf["TMN_CODE"],
            hash_secret=conf["HASH_SECRET"],
            payment_url=conf["PAYMENT_URL"],
            return_url=conf["RETURN_URL"],
            api_url=conf.get("API_URL", ""),
            locale=conf.get("LOCALE") or "vn",
            order_type=conf.get("ORDER_TYPE") or "other",
            expire_minutes=int(conf.get("EXPIRE_MINUTES", 15)),
            timeout=int(conf.get("TIMEOUT", 30)),
        )


# ---------- Canonical string ----------
def _encode(value) -> str:
    return quote_plus(str(value), safe="")


def canonicalize(params) -> str:
    """Return the signable ``key=value&...`` string for a parameter set.

    ``params`` is a mapping or an iterable of ``(name, value)`` pairs. The
    signature fields are dropped, names are sorted by code point and values are
    percent-encoded (spaces as ``+``). ``None`` means absent; an empty string
    is kept as ``name=``.
    """
    fields = {
        k: v for k, v in dict(params).items()
        if k not in (SECURE_HASH_FIELD, SECURE_HASH_TYPE_FIELD) and v is not None
    }
    return "&".join(f"{k}={_encode(fields[k])}" for k in sorted(fields))


# ---------- Signature ----------
class VNPaySigner:
    """HMAC-SHA512 signer bound to the merchant hash secret."""

    def __init__(self, secret: str):
        if not secret:
            raise ImproperlyConfigured("VNPay hash secret is required")
        self._key = secret.encode("utf-8")

    def sign(self, data: str) -> str:
        return hmac.new(self._key, data.encode("utf-8"), hashlib.sha512).hexdigest()

    def sign_params(self, params) -> str:
        return self.sign(canonicalize(params))

    def sign_fields(self, values: Iterable) -> str:
        return self.sign("|".join("" if v is None else str(v) for v in values))

    def verify(self, params: Mapping) -> bool:
        received = params.get(SECURE_HASH_FIELD) or ""
        if not received:
            return False
        expected = self.sign_params(params)
        return hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8"))


# ---------- Dates and amounts ----------
def format_vnpay_date(dt: datetime) -> str:
    if timezone.is_naive(dt):
        dt = dt.replace(tzinfo=VNPAY_TZ)
    return dt.astimezone(VNPAY_TZ).strftime(DATE_FORMAT)


def parse_vnpay_date(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value or "", DATE_FORMAT).replace(tzinfo=VNPAY_TZ)
    except ValueError:
        return None


def scale_amount(amount) -> int:
    """Major currency units -> provider integer (x100, half-up)."""
    try:
        scaled = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise VNPayError("Invalid amount value")
    if scaled <= 0:
        raise VNPayError("Amount must be > 0")
    return int(scaled)


# ---------- Outbound payment request ----------
@dataclass(frozen=True)
class PaymentRequest:
    tmn_code: str
    txn_ref: str
    amount: int
    order_info: str
    return_url: str
    create_date: str
    expire_date: Optional[str] = None
    ip_addr: Optional[str] = None
    bank_code: Optional[str] = None
    locale: str = "vn"
    order_type: str = "other"
    currency: str = VNP_CURRENCY
    command: str = "pay"
    version: str = VNP_VERSION

    def to_pairs(self) -> list:
        pairs = [
            ("vnp_Version", self.version),
            ("vnp_Command", self.command),
            ("vnp_TmnCode", self.tmn_code),
            ("vnp_Locale", self.locale),
            ("vnp_CurrCode", self.currency),
            ("vnp_TxnRef", self.txn_ref),
            ("vnp_OrderInfo", self.order_info),
            ("vnp_OrderType", self.order_type),
            ("vnp_Amount", self.amount),
            ("vnp_ReturnUrl", self.return_url),
            ("vnp_CreateDate", self.create_date),
        ]
        optional = [
            ("vnp_ExpireDate", self.expire_date),
            ("vnp_IpAddr", self.ip_addr),
            ("vnp_BankCode", self.bank_code),
        ]
        pairs.extend((k, v) for k, v in optional if v)
        return pairs


def build_payment_request(config: VNPayConfig, amount, order_info: str, *, txn_ref=None,
                          ip_addr=None, order_type=None, bank_code=None, now=None) -> PaymentRequest:
    if not (order_info or "").strip():
        raise VNPayError("Order description is required")
    now = now or timezone.now()
    return PaymentRequest(
        tmn_code=config.tmn_code,
        txn_ref=txn_ref or gen_txn_ref(),
        amount=scale_amount(amount),
        order_info=order_info.strip(),
        return_url=config.return_url,
        create_date=format_vnpay_date(now),
        expire_date=format_vnpay_date(now + timedelta(minutes=config.expire_minutes)),
        ip_addr=ip_addr,
        bank_code=bank_code,
        locale=config.locale,
        order_type=order_type or config.order_type,
    )


def build_payment_url(config: VNPayConfig, payment_request: PaymentRequest) -> str:
    """Sign the request and return the redirect URL; the hash is appended last."""
    query = canonicalize(payment_request.to_pairs())
    signature = VNPaySigner(config.hash_secret).sign(query)
    return f"{config.payment_url}?{query}&{SECURE_HASH_FIELD}={signature}"


# ---------- Inbound response ----------
def _as_int(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(str(value))
    except ValueError:
        return -1  # present but unparseable; never equals a real amount


@dataclass(frozen=True)
class GatewayResponse:
    txn_ref: str
    response_code: str
    transaction_no: str = ""
    amount: Optional[int] = None
    bank_code: str = ""
    pay_date: str = ""
    transaction_status: str = ""
    message: str = ""
    raw: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_params(cls, params: Mapping) -> "GatewayResponse":
        """Typed view over the ``vnp_*`` fields of a return/IPN request."""
        return cls(
            txn_ref=str(params.get("vnp_TxnRef") or ""),
            response_code=str(params.get("vnp_ResponseCode") or ""),
            transaction_no=str(params.get("vnp_TransactionNo") or ""),
            amount=_as_int(params.get("vnp_Amount")),
            bank_code=str(params.get("vnp_BankCode") or ""),
            pay_date=str(params.get("vnp_PayDate") or ""),
            transaction_status=str(params.get("vnp_TransactionStatus") or ""),
            message=str(params.get("vnp_Message") or ""),
            raw=dict(params),
        )

    @classmethod
    def from_query(cls, data: Mapping) -> "GatewayResponse":
        # querydr: vnp_ResponseCode is the status of the query itself,
        # the payment outcome is vnp_TransactionStatus.
        status = str(data.get("vnp_TransactionStatus") or "")
        return cls(
            txn_ref=str(data.get("vnp_TxnRef") or ""),
            response_code=status,
            transaction_no=str(data.get("vnp_TransactionNo") or ""),
            amount=_as_int(data.get("vnp_Amount")),
            bank_code=str(data.get("vnp_BankCode") or ""),
            pay_date=str(data.get("vnp_PayDate") or ""),
            transaction_status=status,
            message=str(data.get("vnp_Message") or ""),
            raw=dict(data),
        )

    @property
    def is_success(self) -> bool:
        return self.response_code == SUCCESS_CODE and self.transaction_status in ("", SUCCESS_CODE)


# ---------- querydr API ----------
class VNPayClient:
    def __init__(self, config: VNPayConfig):
        if not config.api_url:
            raise ImproperlyConfigured("VNPAY['API_URL'] setting is required for transaction queries")
        self.config = config
        self.signer = VNPaySigner(config.hash_secret)

    def query_transaction(self, *, txn_ref: str, order_info: str, transaction_date: str,
                          ip_addr: str = "127.0.0.1", now=None) -> dict:
        """Ask VNPay for the current state of ``txn_ref``.

        ``transaction_date`` is the ``vnp_CreateDate`` sent with the original
        payment request. Returns the verified response body; raises
        :class:`VNPayError` on transport errors, non-200 responses and
        responses whose signature does not check out.
        """
        payload = {
            "vnp_RequestId": uuid.uuid4().hex,
            "vnp_Version": VNP_VERSION,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": order_info or f"Truy van giao dich {txn_ref}",
            "vnp_TransactionDate": transaction_date,
            "vnp_CreateDate": format_vnpay_date(now or timezone.now()),
            "vnp_IpAddr": ip_addr or "127.0.0.1",
        }
        payload[SECURE_HASH_FIELD] = self.signer.sign_fields(payload[k] for k in QUERY_REQUEST_FIELDS)

        try:
            resp = requests.post(self.config.api_url, json=payload, timeout=self.config.timeout)
        except RequestException as e:
            raise VNPayError(f"Gateway request failed: {e}")
        if resp.status_code != 200:
            raise VNPayError(f"Transaction query failed: HTTP {resp.status_code}. Response: {resp.text[:300]}")
        try:
            data = resp.json()
        except ValueError:
            raise VNPayError(f"Transaction query returned non-JSON body: {resp.text[:300]}")
        if not isinstance(data, dict):
            raise VNPayError(f"Unexpected query response: {json.dumps(data)[:300]}")

        received = str(data.get(SECURE_HASH_FIELD) or "")
        expected = self.signer.sign_fields(data.get(k, "") for k in QUERY_RESPONSE_FIELDS)
        if not received or not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            logger.warning("VNPay querydr response signature mismatch for txn_ref=%s", txn_ref)
            raise VNPayError("Invalid response signature")
        return data
