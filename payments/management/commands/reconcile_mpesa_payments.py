import time
from django.core.management.base import BaseCommand
from django.utils import timezone
from payments.errors import PollError
from payments.integrations.daraja import DarajaClient
from payments.models import MpesaPayment, PaymentStatus
from payments.services import check_payment_status

class Command(BaseCommand):
    help = "Query M-Pesa for pending STK pushes whose callback never arrived and record the outcome"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=2)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = MpesaPayment.objects.filter(status=PaymentStatus.PENDING, created_at__lt=cutoff).order_by("created_at")[:opts["max"]]
        payments = list(qs)

        if not payments:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        client = DarajaClient.from_settings()
        resolved = 0
        for p in payments:
            try:
                view = check_payment_status(p.checkout_request_id, client=client)
                p.refresh_from_db()
                if not p.is_pending:
                    resolved += 1
                    self.stdout.write(self.style.SUCCESS(f"{p.checkout_request_id} -> {p.status}"))
                elif view.is_terminal:
                    self.stdout.write(self.style.WARNING(f"{p.checkout_request_id}: gateway answered {view.result_code} {view.result_description}"))
                else:
                    self.stdout.write(f"{p.checkout_request_id}: still pending")
            except PollError as e:
                self.stdout.write(self.style.WARNING(f"{p.checkout_request_id}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(payments)}, resolved {resolved} payments."))
