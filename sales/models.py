import uuid

from django.db import models

from common.utils import payment_status_for


class Order(models.Model):
    """Customer sales order. Owned by the point-of-sale side; payments reference it."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    class PaymentStatus(models.TextChoices):
        UNPAID = "unpaid", "Unpaid"
        PARTIAL = "partial", "Partial"
        PAID = "paid", "Paid"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=64, unique=True)
    customer_name = models.CharField(max_length=255, blank=True, default="")
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["status", "created_at"], name="order_status_created_idx")]

    def __str__(self):
        return self.order_number

    def refresh_payment_status(self, paid_amount):
        status = payment_status_for(self.total, paid_amount)
        if self.payment_status != status:
            self.payment_status = status
            self.save(update_fields=["payment_status", "updated_at"])
        return self
