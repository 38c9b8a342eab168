import uuid

from django.conf import settings
from django.db import models


class Payment(models.Model):
    class ReferenceType(models.TextChoices):
        ORDER = "order", "Sales order"
        PURCHASE_ORDER = "purchase_order", "Purchase order"

    class Method(models.TextChoices):
        CASH = "cash", "Cash"
        BANK_TRANSFER = "bank_transfer", "Bank transfer"
        CARD = "card", "Card"
        E_WALLET = "e_wallet", "E-wallet"
        CHECK = "check", "Check"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"
        REFUNDED = "refunded", "Refunded"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_number = models.CharField(max_length=64, unique=True)
    reference_type = models.CharField(max_length=32, choices=ReferenceType.choices)
    reference_id = models.UUIDField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    method = models.CharField(max_length=16, choices=Method.choices)
    payment_date = models.DateField()
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="payments",
        null=True,
        blank=True,
    )
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["reference_type", "reference_id", "status"], name="payment_reference_status_idx"),
            models.Index(fields=["status", "payment_date"], name="payment_status_date_idx"),
        ]

    def __str__(self):
        return self.payment_number
