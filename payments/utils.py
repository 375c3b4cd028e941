import secrets
import time

# vnp_ResponseCode -> message shown to the customer
RESPONSE_MESSAGES = {
    "00": "Giao dịch thành công.",
    "07": "Trừ tiền thành công nhưng giao dịch bị nghi ngờ. Vui lòng liên hệ cửa hàng.",
    "09": "Thẻ/Tài khoản chưa đăng ký dịch vụ InternetBanking tại ngân hàng.",
    "10": "Xác thực thông tin thẻ/tài khoản không đúng quá 3 lần.",
    "11": "Đã hết hạn chờ thanh toán. Vui lòng thực hiện lại giao dịch.",
    "12": "Thẻ/Tài khoản đang bị khóa.",
    "13": "Nhập sai mật khẩu xác thực giao dịch (OTP).",
    "24": "Bạn đã hủy giao dịch.",
    "51": "Tài khoản không đủ số dư để thực hiện giao dịch.",
    "65": "Tài khoản đã vượt quá hạn mức giao dịch trong ngày.",
    "75": "Ngân hàng thanh toán đang bảo trì.",
    "79": "Nhập sai mật khẩu thanh toán quá số lần quy định.",
}
DEFAULT_FAILURE_MESSAGE = "Đã có lỗi xảy ra trong quá trình thanh toán."


def describe_response_code(code) -> str:
    return RESPONSE_MESSAGES.get(str(code or ""), DEFAULT_FAILURE_MESSAGE)


def gen_txn_ref(prefix="ORDER_"):
    # e.g. ORDER_1700000000000042
    return f"{prefix}{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR") or "127.0.0.1"
