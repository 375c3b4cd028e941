import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.db import DatabaseError
from django.utils import timezone
from payments.integrations.vnpay import GatewayResponse, VNPayClient, VNPayConfig, VNPayError
from payments.models import VNPayTransaction
from payments.services import PaymentRejected, apply_gateway_response, expire_transaction

# querydr vnp_ResponseCode: transaction not found at VNPay
NOT_FOUND = "91"
# querydr vnp_TransactionStatus values that settle the transaction
SETTLED_STATUSES = {"00", "02"}
# customer never completed the payment page
UNFINISHED_STATUS = "01"


class Command(BaseCommand):
    help = "Resolve or expire VNPay transactions that stayed pending past the payment window"

    def add_arguments(self, parser):
        parser.add_argument("--older-than-minutes", type=int, default=None,
                            help="Pending age before a transaction is swept (default: VNPAY['EXPIRE_MINUTES'])")
        parser.add_argument("--max", type=int, default=100)
        parser.add_argument("--sleep", type=float, default=0.2)
        parser.add_argument("--no-query", action="store_true", help="Expire without asking VNPay first")

    def handle(self, *args, **opts):
        config = VNPayConfig.from_settings()
        minutes = opts["older_than_minutes"]
        if minutes is None:
            minutes = config.expire_minutes
        cutoff = timezone.now() - timedelta(minutes=minutes)
        qs = VNPayTransaction.objects.filter(
            status=VNPayTransaction.PENDING, created_at__lt=cutoff
        ).order_by("created_at")[:opts["max"]]
        txns = list(qs)

        if not txns:
            self.stdout.write(self.style.SUCCESS("No stale VNPay transactions."))
            return

        client = None if opts["no_query"] else VNPayClient(config)
        resolved = expired = 0
        for txn in txns:
            try:
                if client is not None:
                    data = client.query_transaction(
                        txn_ref=txn.txn_ref,
                        order_info=txn.order_info,
                        transaction_date=txn.create_date,
                        ip_addr=txn.ip_addr,
                    )
                    code = str(data.get("vnp_ResponseCode") or "")
                    status = str(data.get("vnp_TransactionStatus") or "")
                    if code == "00" and status in SETTLED_STATUSES:
                        outcome = apply_gateway_response(GatewayResponse.from_query(data), source="querydr")
                        resolved += 1
                        self.stdout.write(self.style.SUCCESS(f"{txn.txn_ref} -> {outcome.transaction.status}"))
                        continue
                    if not (code == NOT_FOUND or (code == "00" and status == UNFINISHED_STATUS)):
                        self.stdout.write(f"{txn.txn_ref}: left pending (code={code or '-'} status={status or '-'})")
                        continue
                if expire_transaction(txn):
                    expired += 1
                    self.stdout.write(self.style.WARNING(f"{txn.txn_ref} -> expired"))
            except VNPayError as e:
                self.stdout.write(self.style.WARNING(f"{txn.txn_ref}: {e}"))
            except PaymentRejected as e:
                self.stdout.write(self.style.ERROR(f"{txn.txn_ref}: rejected ({e.__class__.__name__})"))
            except DatabaseError as e:
                self.stdout.write(self.style.ERROR(f"{txn.txn_ref}: error {e}"))
            if client is not None and opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(txns)}, resolved {resolved}, expired {expired}."))
