import logging
from decimal import Decimal

from django.db import transaction

from events.sinks import PAYMENT_STATUS_CHANGED, PURCHASE_ORDER_RECEIVED
from inventory.models import Supplier
from procurement.models import PurchaseOrder

logger = logging.getLogger(__name__)


class SupplierLedgerSink:
    """Keeps ``Supplier.current_debt`` in step with purchase orders and their payments.

    A received order adds its total to the supplier's debt. A completed
    payment against a purchase order lowers it and a refund adds the
    refunded amount back. The debt is the signed sum of those changes, so
    a payment completed before the goods arrive leaves a credit (negative
    debt) that the receipt then settles.
    """

    def emit(self, event):
        if event.name == PURCHASE_ORDER_RECEIVED:
            self._adjust(event.payload["supplier_id"], Decimal(event.payload["total"]))
        elif event.name == PAYMENT_STATUS_CHANGED:
            payload = event.payload
            if payload.get("reference_type") != "purchase_order":
                return
            supplier_id = (
                PurchaseOrder.objects.filter(pk=payload["reference_id"]).values_list("supplier_id", flat=True).first()
            )
            if supplier_id is None:
                return
            amount = Decimal(payload["amount"])
            if payload["to_status"] == "completed":
                self._adjust(supplier_id, -amount)
            elif payload["to_status"] == "refunded":
                self._adjust(supplier_id, amount)

    @staticmethod
    def _adjust(supplier_id, delta):
        with transaction.atomic():
            supplier = Supplier.objects.select_for_update().get(pk=supplier_id)
            supplier.current_debt += delta
            supplier.save(update_fields=["current_debt", "updated_at"])
        logger.info("supplier_debt_adjusted", extra={"amount": delta})
        if supplier.credit_limit and supplier.current_debt > supplier.credit_limit:
            logger.warning("supplier_over_credit_limit", extra={"amount": supplier.current_debt})
