"""Purchase-order state machine and edit rules.

States: pending -> approved -> received, with cancellation allowed from
pending or approved. received and cancelled are terminal. Once an order
leaves pending only ``expected_delivery_date`` may still change.
"""

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import IncompleteReceiving, InvalidTransition, OrderLocked
from common.utils import next_sequence_number, payment_status_for, to_money
from events.sinks import PURCHASE_ORDER_RECEIVED, PURCHASE_ORDER_STATUS_CHANGED, DomainEvent, NullEventSink
from payments.models import Payment
from procurement.models import PurchaseOrder, PurchaseOrderLine

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "supplier",
    "order_date",
    "expected_delivery_date",
    "shipping_fee",
    "discount_percentage",
    "notes",
    "lines",
)
LOCKED_ORDER_EDITABLE_FIELDS = frozenset({"expected_delivery_date"})
DELETABLE_STATUSES = (PurchaseOrder.Status.CANCELLED, PurchaseOrder.Status.RECEIVED)


def next_po_number():
    return next_sequence_number(PurchaseOrder, "po_number", timezone.now().strftime("PO-%Y%m%d-"))


def compute_totals(lines, *, shipping_fee, discount_percentage):
    subtotal = sum((Decimal(line["quantity"]) * Decimal(line["unit_cost"]) for line in lines), Decimal("0"))
    discount_amount = subtotal * Decimal(discount_percentage or 0) / Decimal("100")
    return {
        "subtotal": to_money(subtotal),
        "discount_amount": to_money(discount_amount),
        "total": to_money(subtotal - discount_amount + Decimal(shipping_fee or 0)),
    }


def validate_delivery_date(order_date, expected_delivery_date):
    if expected_delivery_date and order_date and expected_delivery_date < order_date:
        raise ValidationError({"expected_delivery_date": ["Expected delivery date cannot be before the order date."]})


class PurchaseOrderWorkflow:
    def __init__(self, event_sink=None):
        self.event_sink = event_sink or NullEventSink()

    @transaction.atomic
    def create(self, *, supplier, order_date, lines, expected_delivery_date=None, shipping_fee=0, discount_percentage=0, notes="", created_by=None):
        validate_delivery_date(order_date, expected_delivery_date)
        order = PurchaseOrder.objects.create(
            po_number=next_po_number(),
            supplier=supplier,
            order_date=order_date,
            expected_delivery_date=expected_delivery_date,
            shipping_fee=to_money(shipping_fee),
            discount_percentage=discount_percentage,
            notes=notes or "",
            created_by=created_by if getattr(created_by, "is_authenticated", False) else None,
        )
        self._replace_lines(order, lines)
        order.save()
        logger.info("purchase_order_created", extra={"purchase_order_id": order.id, "amount": order.total})
        return order

    def approve(self, order):
        return self._transition(
            order,
            allowed_from=(PurchaseOrder.Status.PENDING,),
            to_status=PurchaseOrder.Status.APPROVED,
            timestamp_field="approved_at",
        )

    def cancel(self, order):
        return self._transition(
            order,
            allowed_from=(PurchaseOrder.Status.PENDING, PurchaseOrder.Status.APPROVED),
            to_status=PurchaseOrder.Status.CANCELLED,
            timestamp_field="cancelled_at",
        )

    def mark_received(self, order, *, events=None):
        """Move an approved order to received once every line has a batch.

        Reads the line set from the database, so callers inside a receiving
        transaction see their own writes.
        """
        if order.status != PurchaseOrder.Status.APPROVED:
            raise InvalidTransition(f"Cannot mark a {order.status} purchase order as received.")
        if PurchaseOrderLine.objects.filter(purchase_order_id=order.pk, batch__isnull=True).exists():
            raise IncompleteReceiving()

        order.status = PurchaseOrder.Status.RECEIVED
        order.received_at = timezone.now()
        order.save(update_fields=["status", "received_at", "updated_at"])
        logger.info(
            "purchase_order_received",
            extra={"purchase_order_id": order.id, "from_status": PurchaseOrder.Status.APPROVED, "to_status": order.status},
        )

        event = DomainEvent(
            name=PURCHASE_ORDER_RECEIVED,
            entity="purchase_order",
            entity_id=order.id,
            payload={
                "purchase_order_id": order.id,
                "po_number": order.po_number,
                "status": order.status,
                "supplier_id": order.supplier_id,
                "total": order.total,
            },
        )
        if events is None:
            self.event_sink.emit(event)
        else:
            events.append(event)
        return order

    def check_edit(self, order, fields):
        fields = set(fields)
        if order.status == PurchaseOrder.Status.PENDING:
            return
        locked = sorted(fields - LOCKED_ORDER_EDITABLE_FIELDS)
        if locked:
            message = f"Only the expected delivery date can change on a {order.status} purchase order."
            raise OrderLocked(message, field=locked[0], extra={name: [message] for name in locked[1:]})

    def apply_edit(self, order, changes, *, lines=None):
        changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS and key != "lines"}
        with transaction.atomic():
            order = PurchaseOrder.objects.select_for_update().get(pk=order.pk)
            self.check_edit(order, set(changes) | ({"lines"} if lines is not None else set()))
            validate_delivery_date(
                changes.get("order_date", order.order_date),
                changes.get("expected_delivery_date", order.expected_delivery_date),
            )

            for name, value in changes.items():
                setattr(order, name, value)
            if "shipping_fee" in changes:
                order.shipping_fee = to_money(order.shipping_fee)

            if lines is not None:
                self._replace_lines(order, lines)
            elif order.status == PurchaseOrder.Status.PENDING:
                self._apply_totals(order, self._line_payloads(order))
            order.payment_status = payment_status_for(order.total, self._completed_payments(order))
            order.save()
        logger.info("purchase_order_updated", extra={"purchase_order_id": order.id})
        return order

    def delete(self, order):
        with transaction.atomic():
            order = PurchaseOrder.objects.select_for_update().get(pk=order.pk)
            if order.status not in DELETABLE_STATUSES:
                raise OrderLocked("Only cancelled or received purchase orders can be deleted.")
            order_id = order.id
            order.delete()
        logger.info("purchase_order_deleted", extra={"purchase_order_id": order_id})

    def refresh_payment_status(self, order, paid_amount):
        status = payment_status_for(order.total, paid_amount)
        if order.payment_status != status:
            order.payment_status = status
            order.save(update_fields=["payment_status", "updated_at"])
        return order

    def _transition(self, order, *, allowed_from, to_status, timestamp_field):
        with transaction.atomic():
            order = PurchaseOrder.objects.select_for_update().get(pk=order.pk)
            from_status = order.status
            if from_status not in allowed_from:
                raise InvalidTransition(f"Cannot move a {from_status} purchase order to {to_status}.")
            order.status = to_status
            setattr(order, timestamp_field, timezone.now())
            order.save(update_fields=["status", timestamp_field, "updated_at"])

        logger.info(
            "purchase_order_status_changed",
            extra={"purchase_order_id": order.id, "from_status": from_status, "to_status": to_status},
        )
        self.event_sink.emit(
            DomainEvent(
                name=PURCHASE_ORDER_STATUS_CHANGED,
                entity="purchase_order",
                entity_id=order.id,
                payload={"purchase_order_id": order.id, "from_status": from_status, "to_status": to_status},
            )
        )
        return order

    def _replace_lines(self, order, lines):
        order.lines.all().delete()
        for position, line in enumerate(lines):
            quantity = Decimal(line["quantity"])
            unit_cost = Decimal(line["unit_cost"])
            PurchaseOrderLine.objects.create(
                purchase_order=order,
                product=line["product"],
                quantity=quantity,
                unit_cost=to_money(unit_cost),
                line_total=to_money(quantity * unit_cost),
                position=position,
            )
        self._apply_totals(order, lines)

    def _apply_totals(self, order, lines):
        totals = compute_totals(lines, shipping_fee=order.shipping_fee, discount_percentage=order.discount_percentage)
        for name, value in totals.items():
            setattr(order, name, value)

    @staticmethod
    def _completed_payments(order):
        paid = Payment.objects.filter(
            reference_type=Payment.ReferenceType.PURCHASE_ORDER,
            reference_id=order.id,
            status=Payment.Status.COMPLETED,
        ).aggregate(total=Sum("amount"))["total"]
        return to_money(paid or 0)

    @staticmethod
    def _line_payloads(order):
        return [{"quantity": line.quantity, "unit_cost": line.unit_cost} for line in order.lines.all()]
