from django.db import models


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    FAILED = "failed", "Failed"
    TIMEOUT = "timeout", "Timeout"


class ResolutionSource(models.TextChoices):
    CALLBACK = "callback", "Callback"
    POLL = "poll", "Poll"


class Order(models.Model):
    """Storefront order a payment is collected for, matched by ``order_reference``."""

    order_reference = models.CharField(max_length=64, unique=True, db_index=True)
    status = models.CharField(max_length=32, default="pending")
    payment_status = models.CharField(max_length=32, default="unpaid")
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    customer_phone = models.CharField(max_length=16, blank=True, default="")
    payment_completed_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED

    def __str__(self):
        return f"{self.order_reference} ({self.status})"


class MpesaPayment(models.Model):
    # Only created once the gateway has accepted the push, so the id is always set
    checkout_request_id = models.CharField(max_length=100, unique=True)
    merchant_request_id = models.CharField(max_length=100, blank=True, default="")

    order = models.ForeignKey(Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="payments")
    order_reference = models.CharField(max_length=64, db_index=True)
    phone_number = models.CharField(max_length=15)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    description = models.CharField(max_length=64, blank=True, default="")

    status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True
    )
    result_code = models.CharField(max_length=32, blank=True, default="")
    result_description = models.CharField(max_length=255, blank=True, default="")
    resolved_by = models.CharField(max_length=16, choices=ResolutionSource.choices, blank=True, default="")

    mpesa_receipt = models.CharField(max_length=32, blank=True, default="")
    transaction_date = models.DateTimeField(null=True, blank=True)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    paid_phone_number = models.CharField(max_length=15, blank=True, default="")
    raw_callback = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    def __str__(self):
        return f"{self.phone_number} - {self.amount} ({self.status})"
