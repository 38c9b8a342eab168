import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from common.exceptions import InvalidDateRange
from common.utils import next_sequence_number, to_money
from inventory.models import Batch

logger = logging.getLogger(__name__)


def validate_batch_dates(manufactured_on, expires_on, today=None):
    today = today or timezone.localdate()
    if manufactured_on is None:
        raise InvalidDateRange("Manufacturing date is required.", field="manufactured_on")
    if expires_on is None:
        raise InvalidDateRange("Expiry date is required.", field="expires_on")
    if expires_on <= manufactured_on:
        raise InvalidDateRange("Expiry date must be after the manufacturing date.", field="expires_on")
    if expires_on <= today:
        raise InvalidDateRange("Expiry date must be in the future.", field="expires_on")


def next_batch_code():
    return next_sequence_number(Batch, "code", timezone.now().strftime("B-%Y%m%d-"))


class BatchFactory:
    """Builds stock batches from received purchase-order lines."""

    def create_from_line(self, line, *, quantity, manufactured_on, expires_on, batch_code=None, selling_price=None, notes=""):
        product = line.product
        cost_price = to_money(line.unit_cost)
        if selling_price is None:
            selling_price = product.selling_price if product.selling_price is not None else cost_price
        batch = Batch.objects.create(
            code=batch_code or next_batch_code(),
            product=product,
            quantity=quantity,
            cost_price=cost_price,
            selling_price=to_money(selling_price),
            manufactured_on=manufactured_on,
            expires_on=expires_on,
            notes=notes or "",
        )
        logger.info("batch_created", extra={"batch_id": batch.id, "line_id": line.id, "quantity": quantity})
        return batch


def near_expiry(queryset=None, days=None):
    days = settings.BATCH_NEAR_EXPIRY_DAYS if days is None else days
    today = timezone.localdate()
    queryset = Batch.objects.all() if queryset is None else queryset
    return queryset.filter(
        status=Batch.Status.ACTIVE,
        expires_on__gt=today,
        expires_on__lte=today + timedelta(days=days),
    )


def expire_batches(today=None):
    """Mark active batches whose expiry date has passed. Returns the number updated."""
    today = today or timezone.localdate()
    updated = Batch.objects.filter(status=Batch.Status.ACTIVE, expires_on__lte=today).update(
        status=Batch.Status.EXPIRED,
        updated_at=timezone.now(),
    )
    if updated:
        logger.info("batches_expired", extra={"quantity": updated})
    return updated
