"""Append-only stock ledger.

``InventoryRecord`` quantities are only ever written here, in the same
transaction that appends the matching ``MovementEntry``. The sum of signed
movement quantities for a batch always equals the record's on-hand plus
on-shelf total.
"""

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from rest_framework.exceptions import ValidationError

from events.sinks import STOCK_CHANGED, DomainEvent, NullEventSink
from inventory.models import InventoryRecord, MovementEntry

logger = logging.getLogger(__name__)

BUCKET_FIELDS = {
    MovementEntry.Bucket.ON_HAND: "quantity_on_hand",
    MovementEntry.Bucket.ON_SHELF: "quantity_on_shelf",
}

RECEIPT_REASON = "Purchase Order Receipt"
SHELF_TRANSFER_REASON = "Transfer to shelf"


class InventoryLedger:
    def __init__(self, event_sink=None):
        self.event_sink = event_sink or NullEventSink()

    def open_record(self, batch, *, location=None, location_label=""):
        return InventoryRecord.objects.create(
            batch=batch,
            location=location,
            location_label=location_label or (location.name if location else ""),
        )

    def append(
        self,
        record,
        *,
        direction,
        quantity,
        reason,
        bucket=MovementEntry.Bucket.ON_HAND,
        source_ref_type=None,
        source_ref_id=None,
        notes="",
        actor=None,
        events=None,
    ):
        """Append one movement and apply it to ``record``.

        When ``events`` is a list the ``stock.changed`` event is collected
        there so the caller can emit it after its own transaction commits.
        Otherwise it is emitted through the ledger's sink right away.
        """
        quantity = Decimal(quantity)
        if quantity <= 0:
            raise ValidationError({"quantity": ["Movement quantity must be greater than zero."]})

        field_name = BUCKET_FIELDS[bucket]
        with transaction.atomic():
            locked = InventoryRecord.objects.select_for_update().get(pk=record.pk)
            current = getattr(locked, field_name)
            if direction == MovementEntry.Direction.OUT:
                if current < quantity:
                    raise ValidationError({"quantity": [f"Only {current} available in {bucket}."]})
                new_value = current - quantity
            else:
                new_value = current + quantity

            entry = MovementEntry.objects.create(
                batch_id=locked.batch_id,
                record=locked,
                direction=direction,
                bucket=bucket,
                quantity=quantity,
                reason=reason,
                source_ref_type=source_ref_type,
                source_ref_id=source_ref_id,
                notes=notes or "",
                actor=actor if getattr(actor, "is_authenticated", False) else None,
            )
            setattr(locked, field_name, new_value)
            locked.save(update_fields=[field_name, "updated_at"])

        for name in BUCKET_FIELDS.values():
            setattr(record, name, getattr(locked, name))

        logger.info(
            "stock_movement_appended",
            extra={"batch_id": record.batch_id, "direction": direction, "bucket": bucket, "quantity": quantity},
        )
        event = self.stock_changed_event(record)
        if events is None:
            self.event_sink.emit(event)
        else:
            events.append(event)
        return entry

    def move_to_shelf(self, record, quantity, *, actor=None, notes=""):
        """Move stock from the warehouse bucket to the shelf bucket."""
        events = []
        with transaction.atomic():
            self.append(
                record,
                direction=MovementEntry.Direction.OUT,
                bucket=MovementEntry.Bucket.ON_HAND,
                quantity=quantity,
                reason=SHELF_TRANSFER_REASON,
                notes=notes,
                actor=actor,
                events=events,
            )
            self.append(
                record,
                direction=MovementEntry.Direction.IN,
                bucket=MovementEntry.Bucket.ON_SHELF,
                quantity=quantity,
                reason=SHELF_TRANSFER_REASON,
                notes=notes,
                actor=actor,
                events=events,
            )
        # Only the final position matters to listeners.
        self.event_sink.emit(events[-1])
        return InventoryRecord.objects.get(pk=record.pk)

    @staticmethod
    def stock_changed_event(record):
        return DomainEvent(
            name=STOCK_CHANGED,
            entity="batch",
            entity_id=record.batch_id,
            payload={
                "batch_id": record.batch_id,
                "quantity_on_hand": record.quantity_on_hand,
                "quantity_on_shelf": record.quantity_on_shelf,
            },
        )


def derive_quantities(batch):
    """Recompute on-hand and on-shelf quantities from the movement history."""
    totals = {bucket: Decimal("0") for bucket in BUCKET_FIELDS}
    rows = MovementEntry.objects.filter(batch=batch).values("bucket", "direction").order_by().annotate(total=Sum("quantity"))
    for row in rows:
        sign = 1 if row["direction"] == MovementEntry.Direction.IN else -1
        totals[row["bucket"]] += sign * (row["total"] or Decimal("0"))
    return {
        "quantity_on_hand": totals[MovementEntry.Bucket.ON_HAND],
        "quantity_on_shelf": totals[MovementEntry.Bucket.ON_SHELF],
    }


def ledger_balance(batch):
    derived = derive_quantities(batch)
    return derived["quantity_on_hand"] + derived["quantity_on_shelf"]


def find_mismatches(batches):
    """Yield ``(batch, derived, record)`` for every batch whose record disagrees with its ledger."""
    for batch in batches:
        record = getattr(batch, "inventory_record", None)
        derived = derive_quantities(batch)
        if record is None:
            if any(derived.values()):
                yield batch, derived, None
            continue
        if derived["quantity_on_hand"] != record.quantity_on_hand or derived["quantity_on_shelf"] != record.quantity_on_shelf:
            yield batch, derived, record
