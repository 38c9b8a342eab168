import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    cost_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    selling_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["is_active", "name"], name="product_active_name_idx")]

    def __str__(self):
        return f"{self.sku} {self.name}"


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    current_debt = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    credit_limit = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["is_active", "name"], name="supplier_active_name_idx")]

    def __str__(self):
        return f"{self.code} {self.name}"


class Location(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.code


class Batch(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        DISPOSED = "disposed", "Disposed"

    class Promotion(models.TextChoices):
        NONE = "none", "None"
        DISCOUNT = "discount", "Discount"
        CLEARANCE = "clearance", "Clearance"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="batches")
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    cost_price = models.DecimalField(max_digits=12, decimal_places=2)
    selling_price = models.DecimalField(max_digits=12, decimal_places=2)
    manufactured_on = models.DateField()
    expires_on = models.DateField()
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    promotion = models.CharField(max_length=16, choices=Promotion.choices, default=Promotion.NONE)
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["product", "status"], name="batch_product_status_idx"),
            models.Index(fields=["expires_on"], name="batch_expires_idx"),
        ]

    def __str__(self):
        return self.code

    @property
    def days_until_expiry(self):
        return (self.expires_on - timezone.localdate()).days

    @property
    def is_expired(self):
        return self.expires_on <= timezone.localdate()

    @property
    def is_near_expiry(self):
        window = getattr(settings, "BATCH_NEAR_EXPIRY_DAYS", 30)
        return 0 < self.days_until_expiry <= window



class InventoryRecord(models.Model):
    """Per-batch stock position. Quantities are written only by the inventory ledger."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    batch = models.OneToOneField(Batch, on_delete=models.PROTECT, related_name="inventory_record")
    location = models.ForeignKey(Location, on_delete=models.PROTECT, null=True, blank=True)
    location_label = models.CharField(max_length=255, blank=True, default="")
    quantity_on_hand = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity_on_shelf = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity_reserved = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def total_quantity(self):
        return self.quantity_on_hand + self.quantity_on_shelf

    @property
    def quantity_available(self):
        return max(self.total_quantity - self.quantity_reserved, 0)


class MovementEntry(models.Model):
    class Direction(models.TextChoices):
        IN = "in", "In"
        OUT = "out", "Out"

    class Bucket(models.TextChoices):
        ON_HAND = "on_hand", "Warehouse"
        ON_SHELF = "on_shelf", "Shelf"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    batch = models.ForeignKey(Batch, on_delete=models.PROTECT, related_name="movements")
    record = models.ForeignKey(InventoryRecord, on_delete=models.PROTECT, related_name="movements")
    direction = models.CharField(max_length=8, choices=Direction.choices)
    bucket = models.CharField(max_length=16, choices=Bucket.choices, default=Bucket.ON_HAND)
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=200)
    source_ref_type = models.CharField(max_length=64, null=True, blank=True)
    source_ref_id = models.UUIDField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    actor = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["batch", "created_at"], name="movement_batch_created_idx"),
            models.Index(fields=["source_ref_id", "source_ref_type"], name="movement_source_ref_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Movement entries are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Movement entries are append-only.")

    @property
    def signed_quantity(self):
        return self.quantity if self.direction == self.Direction.IN else -self.quantity
