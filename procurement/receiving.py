"""Turns approved purchase-order lines into stock.

Each line receipt is one database transaction: lock the order and the line,
create the batch, open its inventory record, append the receipt movement,
attach the batch to the line with a guarded update, then mark the order
received when no line is left outstanding. Events go out only after the
transaction commits.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import APIException, NotFound, ValidationError

from common.exceptions import AlreadyReceived, InvalidReceivedQuantity, InvalidTransition, ReceivingFailed
from events.sinks import NullEventSink
from inventory.batches import BatchFactory, validate_batch_dates
from inventory.ledger import RECEIPT_REASON, InventoryLedger
from inventory.models import Batch, InventoryRecord, MovementEntry
from procurement.models import PurchaseOrder, PurchaseOrderLine
from procurement.workflow import PurchaseOrderWorkflow

logger = logging.getLogger(__name__)

SOURCE_REF_TYPE = "procurement.purchase_order"


@dataclass
class LineReceipt:
    order: PurchaseOrder
    line: PurchaseOrderLine
    batch: Batch
    record: InventoryRecord
    movement: MovementEntry

    @property
    def order_received(self):
        return self.order.status == PurchaseOrder.Status.RECEIVED


class ReceivingCoordinator:
    def __init__(self, event_sink=None, *, batch_factory=None, ledger=None, workflow=None):
        self.event_sink = event_sink or NullEventSink()
        self.batch_factory = batch_factory or BatchFactory()
        self.ledger = ledger or InventoryLedger(self.event_sink)
        self.workflow = workflow or PurchaseOrderWorkflow(self.event_sink)

    def receive_line(
        self,
        line_id,
        *,
        quantity,
        manufactured_on,
        expires_on,
        location=None,
        location_label="",
        notes="",
        batch_code=None,
        selling_price=None,
        actor=None,
    ):
        quantity = self._parse_quantity(quantity)
        validate_batch_dates(manufactured_on, expires_on)

        events = []
        try:
            with transaction.atomic():
                order = self._lock_order(line_id)
                line = self._lock_line(line_id)
                self._check_receivable(order, line, quantity)

                batch = self.batch_factory.create_from_line(
                    line,
                    quantity=quantity,
                    manufactured_on=manufactured_on,
                    expires_on=expires_on,
                    batch_code=batch_code,
                    selling_price=selling_price,
                    notes=notes,
                )
                record = self.ledger.open_record(batch, location=location, location_label=location_label)
                movement = self.ledger.append(
                    record,
                    direction=MovementEntry.Direction.IN,
                    bucket=MovementEntry.Bucket.ON_HAND,
                    quantity=quantity,
                    reason=RECEIPT_REASON,
                    source_ref_type=SOURCE_REF_TYPE,
                    source_ref_id=order.id,
                    notes=notes,
                    actor=actor,
                    events=events,
                )

                updated = PurchaseOrderLine.objects.filter(pk=line.pk, batch__isnull=True).update(
                    batch=batch,
                    received_quantity=quantity,
                    received_at=timezone.now(),
                )
                if updated != 1:
                    raise AlreadyReceived()

                if not PurchaseOrderLine.objects.filter(purchase_order_id=order.pk, batch__isnull=True).exists():
                    order = self.workflow.mark_received(order, events=events)
        except APIException:
            raise
        except Exception as exc:
            logger.exception("receiving_rolled_back", extra={"line_id": line_id, "quantity": quantity})
            raise ReceivingFailed(cause=exc) from exc

        logger.info(
            "line_received",
            extra={"purchase_order_id": order.id, "line_id": line_id, "batch_id": batch.id, "quantity": quantity},
        )
        for event in events:
            self.event_sink.emit(event)

        line = PurchaseOrderLine.objects.select_related("batch").get(pk=line_id)
        return LineReceipt(order=order, line=line, batch=batch, record=record, movement=movement)

    def receive_lines(self, order, items, *, actor=None):
        """Receive several lines of ``order``, each in its own transaction."""
        line_ids = set(order.lines.values_list("id", flat=True))
        unknown = [str(item["line_id"]) for item in items if item["line_id"] not in line_ids]
        if unknown:
            raise ValidationError({"line_id": [f"Line {line_id} is not part of this purchase order." for line_id in unknown]})

        results = []
        for item in items:
            payload = dict(item)
            line_id = payload.pop("line_id")
            results.append(self.receive_line(line_id, actor=actor, **payload))
        return results

    def _lock_order(self, line_id):
        order_id = PurchaseOrderLine.objects.filter(pk=line_id).values_list("purchase_order_id", flat=True).first()
        if order_id is None:
            raise NotFound("Purchase order line not found.")
        return PurchaseOrder.objects.select_for_update().get(pk=order_id)

    def _lock_line(self, line_id):
        return PurchaseOrderLine.objects.select_for_update().get(pk=line_id)

    @staticmethod
    def _parse_quantity(quantity):
        try:
            return Decimal(quantity)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidReceivedQuantity("Received quantity must be a number.", field="quantity")

    @staticmethod
    def _check_receivable(order, line, quantity):
        if order.status != PurchaseOrder.Status.APPROVED:
            raise InvalidTransition(f"Lines of a {order.status} purchase order cannot be received.")
        if line.batch_id is not None:
            raise AlreadyReceived()
        if quantity <= 0 or quantity > line.quantity:
            raise InvalidReceivedQuantity(
                f"Received quantity must be greater than zero and at most {line.quantity}.",
                field="quantity",
            )
