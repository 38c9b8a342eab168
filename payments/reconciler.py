import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from common.exceptions import (
    InvalidAmount,
    InvalidPaymentTransition,
    OverpaymentNotConfirmed,
    PaymentLocked,
    RefundNotAllowed,
)
from common.utils import next_sequence_number, to_money
from events.sinks import PAYMENT_STATUS_CHANGED, DomainEvent, NullEventSink
from payments.models import Payment
from payments.references import DocumentReference
from procurement.workflow import PurchaseOrderWorkflow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    Payment.Status.PENDING: {Payment.Status.COMPLETED, Payment.Status.CANCELLED},
    Payment.Status.COMPLETED: {Payment.Status.REFUNDED},
}
TIMESTAMP_FIELDS = {
    Payment.Status.COMPLETED: "completed_at",
    Payment.Status.CANCELLED: "cancelled_at",
    Payment.Status.REFUNDED: "refunded_at",
}
EDITABLE_FIELDS = ("amount", "method", "payment_date", "notes")
DELETABLE_STATUSES = (Payment.Status.PENDING, Payment.Status.CANCELLED)
# Transitions that change what has been settled against the referenced document.
SETTLEMENT_STATUSES = (Payment.Status.COMPLETED, Payment.Status.REFUNDED)


def next_payment_number():
    return next_sequence_number(Payment, "payment_number", timezone.now().strftime("PAY-%Y%m%d-"))


class PaymentReconciler:
    """Records payments against sales and purchase orders and tracks what is left to pay.

    Only completed payments count toward a document's settled amount.
    Overpaying is allowed when the caller confirms it, unless
    ``PAYMENT_OVERPAYMENT_POLICY`` is ``"reject"``.
    """

    def __init__(self, event_sink=None, *, overpayment_policy=None):
        self.event_sink = event_sink or NullEventSink()
        self.overpayment_policy = overpayment_policy or getattr(settings, "PAYMENT_OVERPAYMENT_POLICY", "confirm")

    def completed_total(self, reference):
        total = reference.payments().filter(status=Payment.Status.COMPLETED).aggregate(total=Sum("amount"))["total"]
        return to_money(total or 0)

    def remaining_balance(self, reference, document=None):
        document = document or reference.resolve()
        return max(to_money(document.total) - self.completed_total(reference), Decimal("0.00"))

    def balance_summary(self, reference):
        document = reference.resolve()
        paid = self.completed_total(reference)
        total = to_money(document.total)
        return {
            "reference_type": reference.kind,
            "reference_id": reference.id,
            "total": total,
            "paid_amount": paid,
            "remaining_balance": max(total - paid, Decimal("0.00")),
            "overpaid": paid > total,
            "payment_status": document.payment_status,
        }

    def create_payment(self, reference, *, amount, method, payment_date=None, notes="", actor=None, confirm_overpayment=False):
        """Record a pending payment. Returns ``(payment, overpayment_warning)``."""
        amount = self._validate_amount(amount)
        with transaction.atomic():
            document = reference.resolve(lock=True)
            warning = self._check_overpayment(reference, document, amount, confirm_overpayment)
            payment = Payment.objects.create(
                payment_number=next_payment_number(),
                reference_type=reference.kind,
                reference_id=reference.id,
                amount=amount,
                method=method,
                payment_date=payment_date or timezone.localdate(),
                notes=notes or "",
                created_by=actor if getattr(actor, "is_authenticated", False) else None,
            )
        logger.info(
            "payment_created",
            extra={"payment_id": payment.id, "reference_type": reference.kind, "reference_id": reference.id, "amount": amount},
        )
        return payment, warning

    def edit_payment(self, payment, changes, *, confirm_overpayment=False):
        """Apply ``changes`` to a pending payment. Returns ``(payment, overpayment_warning)``."""
        changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS}
        warning = None
        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=payment.pk)
            if payment.status != Payment.Status.PENDING:
                raise PaymentLocked(f"A {payment.status} payment cannot be edited.")
            if "amount" in changes:
                changes["amount"] = self._validate_amount(changes["amount"])
                reference = DocumentReference.of(payment)
                document = reference.resolve(lock=True)
                warning = self._check_overpayment(reference, document, changes["amount"], confirm_overpayment)
            for name, value in changes.items():
                setattr(payment, name, value)
            payment.save()
        logger.info("payment_updated", extra={"payment_id": payment.id, "amount": payment.amount})
        return payment, warning

    def delete_payment(self, payment):
        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=payment.pk)
            if payment.status not in DELETABLE_STATUSES:
                raise PaymentLocked(f"A {payment.status} payment cannot be deleted.")
            payment_id = payment.id
            payment.delete()
        logger.info("payment_deleted", extra={"payment_id": payment_id})

    def complete_payment(self, payment):
        return self._transition(payment, Payment.Status.COMPLETED)

    def cancel_payment(self, payment):
        return self._transition(payment, Payment.Status.CANCELLED)

    def refund_payment(self, payment):
        def guard(locked):
            if locked.reference_type != Payment.ReferenceType.PURCHASE_ORDER:
                raise RefundNotAllowed("Only purchase-order payments can be refunded.")
            if locked.status != Payment.Status.COMPLETED:
                raise RefundNotAllowed(f"A {locked.status} payment cannot be refunded.")

        return self._transition(payment, Payment.Status.REFUNDED, guard=guard)

    def refresh_reference_status(self, reference):
        document = reference.resolve(lock=True, required=False)
        if document is None:
            return None
        paid = self.completed_total(reference)
        if reference.is_purchase_order:
            return PurchaseOrderWorkflow(self.event_sink).refresh_payment_status(document, paid)
        return document.refresh_payment_status(paid)

    def _transition(self, payment, to_status, guard=None):
        event = None
        with transaction.atomic():
            payment = Payment.objects.select_for_update().get(pk=payment.pk)
            if guard is not None:
                guard(payment)
            from_status = payment.status
            if to_status not in ALLOWED_TRANSITIONS.get(from_status, ()):
                raise InvalidPaymentTransition(f"Cannot move a {from_status} payment to {to_status}.")

            timestamp_field = TIMESTAMP_FIELDS[to_status]
            payment.status = to_status
            setattr(payment, timestamp_field, timezone.now())
            payment.save(update_fields=["status", timestamp_field, "updated_at"])

            if to_status in SETTLEMENT_STATUSES:
                self.refresh_reference_status(DocumentReference.of(payment))
                event = DomainEvent(
                    name=PAYMENT_STATUS_CHANGED,
                    entity="payment",
                    entity_id=payment.id,
                    payload={
                        "payment_id": payment.id,
                        "reference_type": payment.reference_type,
                        "reference_id": payment.reference_id,
                        "amount": payment.amount,
                        "from_status": from_status,
                        "to_status": to_status,
                    },
                )

        logger.info(
            "payment_status_changed",
            extra={"payment_id": payment.id, "from_status": from_status, "to_status": to_status, "amount": payment.amount},
        )
        if event is not None:
            self.event_sink.emit(event)
        return payment

    @staticmethod
    def _validate_amount(amount):
        try:
            amount = to_money(amount)
        except (ArithmeticError, TypeError, ValueError):
            raise InvalidAmount("Payment amount must be a number.", field="amount")
        if amount <= 0:
            raise InvalidAmount(field="amount")
        return amount

    def _check_overpayment(self, reference, document, amount, confirmed):
        remaining = self.remaining_balance(reference, document)
        if amount <= remaining:
            return None

        message = f"Payment amount {amount} exceeds the remaining balance {remaining}."
        if self.overpayment_policy == "reject":
            raise InvalidAmount(message, field="amount", extra={"remaining_balance": str(remaining)})
        if not confirmed:
            raise OverpaymentNotConfirmed(message, field="amount", extra={"remaining_balance": str(remaining)})

        logger.warning(
            "overpayment_confirmed",
            extra={"reference_type": reference.kind, "reference_id": reference.id, "amount": amount},
        )
        return message
