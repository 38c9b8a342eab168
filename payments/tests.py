import uuid
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from common.exceptions import (
    InvalidAmount,
    InvalidPaymentTransition,
    OverpaymentNotConfirmed,
    PaymentLocked,
    RefundNotAllowed,
)
from events.sinks import PAYMENT_STATUS_CHANGED, CompositeEventSink, RecordingEventSink
from inventory.models import Product, Supplier
from payments.models import Payment
from payments.reconciler import PaymentReconciler
from payments.references import DocumentReference
from procurement.models import PurchaseOrder
from procurement.receiving import ReceivingCoordinator
from procurement.suppliers import SupplierLedgerSink
from procurement.workflow import PurchaseOrderWorkflow
from sales.models import Order


class PaymentTestMixin:
    def create_purchase_order(self, total="100.00"):
        supplier = Supplier.objects.create(code=f"SUP-{uuid.uuid4().hex[:6]}", name="Dry Goods Co", current_debt=Decimal("100.00"))
        product = Product.objects.create(sku=f"RICE-{uuid.uuid4().hex[:6]}", name="Rice 5kg")
        return PurchaseOrderWorkflow().create(
            supplier=supplier,
            order_date=timezone.localdate(),
            lines=[{"product": product, "quantity": Decimal("1"), "unit_cost": Decimal(total)}],
        )


class PaymentReconcilerTests(PaymentTestMixin, TestCase):
    def setUp(self):
        self.sink = RecordingEventSink()
        self.reconciler = PaymentReconciler(self.sink)
        self.order = self.create_purchase_order()
        self.reference = DocumentReference.purchase_order(self.order.id)

    def pay(self, amount, **kwargs):
        payment, _ = self.reconciler.create_payment(self.reference, amount=Decimal(amount), method=Payment.Method.CASH, **kwargs)
        return payment

    def test_full_payment_then_refund(self):
        payment = self.pay("100.00")
        self.assertEqual(payment.status, Payment.Status.PENDING)
        self.assertTrue(payment.payment_number.startswith(timezone.now().strftime("PAY-%Y%m%d-")))
        self.assertEqual(self.reconciler.remaining_balance(self.reference), Decimal("100.00"))

        payment = self.reconciler.complete_payment(payment)
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(self.reconciler.remaining_balance(self.reference), Decimal("0.00"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PurchaseOrder.PaymentStatus.PAID)

        payment = self.reconciler.refund_payment(payment)
        self.assertEqual(payment.status, Payment.Status.REFUNDED)
        self.assertIsNotNone(payment.refunded_at)
        self.assertEqual(self.reconciler.remaining_balance(self.reference), Decimal("100.00"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PurchaseOrder.PaymentStatus.UNPAID)

        events = self.sink.named(PAYMENT_STATUS_CHANGED)
        self.assertEqual([event.payload["to_status"] for event in events], ["completed", "refunded"])
        self.assertEqual(events[0].payload["reference_id"], self.order.id)

    def test_remaining_balance_only_counts_completed_payments(self):
        balances = [self.reconciler.remaining_balance(self.reference)]
        first = self.pay("30.00")
        balances.append(self.reconciler.remaining_balance(self.reference))
        self.reconciler.complete_payment(first)
        balances.append(self.reconciler.remaining_balance(self.reference))
        self.reconciler.cancel_payment(self.pay("10.00"))
        balances.append(self.reconciler.remaining_balance(self.reference))
        self.reconciler.complete_payment(self.pay("50.00"))
        balances.append(self.reconciler.remaining_balance(self.reference))

        self.assertEqual(balances, [Decimal("100.00"), Decimal("100.00"), Decimal("70.00"), Decimal("70.00"), Decimal("20.00")])
        self.assertEqual(balances, sorted(balances, reverse=True))
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PurchaseOrder.PaymentStatus.PARTIAL)

    def test_amount_must_be_positive(self):
        for amount in ("0", "-5"):
            with self.assertRaises(InvalidAmount) as ctx:
                self.pay(amount)
            self.assertEqual(list(ctx.exception.errors), ["amount"])
        self.assertFalse(Payment.objects.exists())

    def test_missing_reference_is_not_found(self):
        with self.assertRaises(NotFound):
            self.reconciler.create_payment(DocumentReference.purchase_order(uuid.uuid4()), amount=Decimal("1"), method=Payment.Method.CASH)

    def test_overpayment_needs_confirmation(self):
        self.reconciler.complete_payment(self.pay("80.00"))

        with self.assertRaises(OverpaymentNotConfirmed) as ctx:
            self.pay("50.00")
        self.assertEqual(ctx.exception.errors["remaining_balance"], "20.00")
        self.assertEqual(Payment.objects.count(), 1)

        with self.assertLogs("payments.reconciler", level="WARNING"):
            payment, warning = self.reconciler.create_payment(
                self.reference,
                amount=Decimal("50.00"),
                method=Payment.Method.CARD,
                confirm_overpayment=True,
            )
        self.assertIn("exceeds the remaining balance", warning)

        self.reconciler.complete_payment(payment)
        summary = self.reconciler.balance_summary(self.reference)
        self.assertTrue(summary["overpaid"])
        self.assertEqual(summary["remaining_balance"], Decimal("0.00"))
        self.assertEqual(summary["paid_amount"], Decimal("130.00"))

    def test_reject_policy_refuses_overpayment_even_when_confirmed(self):
        reconciler = PaymentReconciler(overpayment_policy="reject")

        with self.assertRaises(InvalidAmount):
            reconciler.create_payment(self.reference, amount=Decimal("150.00"), method=Payment.Method.CASH, confirm_overpayment=True)

    def test_only_pending_payments_can_be_edited(self):
        payment = self.pay("10.00")
        payment, warning = self.reconciler.edit_payment(payment, {"amount": Decimal("12.50"), "notes": "corrected"})
        self.assertEqual(payment.amount, Decimal("12.50"))
        self.assertIsNone(warning)

        self.reconciler.complete_payment(payment)
        with self.assertRaises(PaymentLocked):
            self.reconciler.edit_payment(payment, {"notes": "too late"})

    def test_edit_revalidates_amount(self):
        payment = self.pay("10.00")

        with self.assertRaises(InvalidAmount):
            self.reconciler.edit_payment(payment, {"amount": Decimal("0")})
        with self.assertRaises(OverpaymentNotConfirmed):
            self.reconciler.edit_payment(payment, {"amount": Decimal("500.00")})

    def test_delete_rules(self):
        pending = self.pay("10.00")
        cancelled = self.reconciler.cancel_payment(self.pay("10.00"))
        completed = self.reconciler.complete_payment(self.pay("10.00"))

        self.reconciler.delete_payment(pending)
        self.reconciler.delete_payment(cancelled)
        with self.assertRaises(PaymentLocked):
            self.reconciler.delete_payment(completed)
        self.assertEqual(list(Payment.objects.values_list("id", flat=True)), [completed.id])

    def test_invalid_transitions(self):
        cancelled = self.reconciler.cancel_payment(self.pay("10.00"))

        with self.assertRaises(InvalidPaymentTransition):
            self.reconciler.complete_payment(cancelled)
        with self.assertRaises(InvalidPaymentTransition):
            self.reconciler.cancel_payment(cancelled)

        completed = self.reconciler.complete_payment(self.pay("10.00"))
        with self.assertRaises(InvalidPaymentTransition):
            self.reconciler.cancel_payment(completed)

    def test_refund_rules(self):
        with self.assertRaises(RefundNotAllowed):
            self.reconciler.refund_payment(self.pay("10.00"))

        refunded = self.reconciler.refund_payment(self.reconciler.complete_payment(self.pay("10.00")))
        with self.assertRaises(RefundNotAllowed):
            self.reconciler.refund_payment(refunded)

        sales_order = Order.objects.create(order_number="SO-1", total=Decimal("20.00"))
        payment, _ = self.reconciler.create_payment(DocumentReference.order(sales_order.id), amount=Decimal("20.00"), method=Payment.Method.CASH)
        payment = self.reconciler.complete_payment(payment)
        with self.assertRaises(RefundNotAllowed):
            self.reconciler.refund_payment(payment)

    def test_sales_order_payment_status_is_refreshed(self):
        sales_order = Order.objects.create(order_number="SO-2", total=Decimal("40.00"))
        reference = DocumentReference.order(sales_order.id)

        payment, _ = self.reconciler.create_payment(reference, amount=Decimal("15.00"), method=Payment.Method.E_WALLET)
        self.reconciler.complete_payment(payment)

        sales_order.refresh_from_db()
        self.assertEqual(sales_order.payment_status, Order.PaymentStatus.PARTIAL)

    def test_supplier_debt_follows_completed_and_refunded_payments(self):
        reconciler = PaymentReconciler(CompositeEventSink([self.sink, SupplierLedgerSink()]))
        payment, _ = reconciler.create_payment(self.reference, amount=Decimal("40.00"), method=Payment.Method.BANK_TRANSFER)

        reconciler.complete_payment(payment)
        supplier = Supplier.objects.get(pk=self.order.supplier_id)
        self.assertEqual(supplier.current_debt, Decimal("60.00"))

        reconciler.refund_payment(payment)
        supplier.refresh_from_db()
        self.assertEqual(supplier.current_debt, Decimal("100.00"))

    def test_order_paid_before_receipt_leaves_no_supplier_debt(self):
        ledger_sink = SupplierLedgerSink()
        supplier = Supplier.objects.create(code="SUP-PREPAID", name="Prepaid Mills")
        product = Product.objects.create(sku="FLOUR-25", name="Flour 25kg")
        workflow = PurchaseOrderWorkflow(ledger_sink)
        order = workflow.approve(
            workflow.create(
                supplier=supplier,
                order_date=timezone.localdate(),
                lines=[{"product": product, "quantity": Decimal("10"), "unit_cost": Decimal("100.00")}],
            )
        )
        reconciler = PaymentReconciler(ledger_sink)
        payment, _ = reconciler.create_payment(
            DocumentReference.purchase_order(order.id), amount=Decimal("1000.00"), method=Payment.Method.BANK_TRANSFER
        )
        reconciler.complete_payment(payment)
        supplier.refresh_from_db()
        self.assertEqual(supplier.current_debt, Decimal("-1000.00"))

        today = timezone.localdate()
        ReceivingCoordinator(ledger_sink).receive_line(
            order.lines.get().id,
            quantity=Decimal("10"),
            manufactured_on=today - timedelta(days=5),
            expires_on=today + timedelta(days=90),
        )

        supplier.refresh_from_db()
        self.assertEqual(supplier.current_debt, Decimal("0.00"))
        order.refresh_from_db()
        self.assertEqual(order.status, PurchaseOrder.Status.RECEIVED)
        self.assertEqual(order.payment_status, PurchaseOrder.PaymentStatus.PAID)


class DocumentReferenceTests(TestCase):
    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            DocumentReference("invoice", uuid.uuid4())
        self.assertIn("reference_type", ctx.exception.detail)

    def test_string_ids_are_parsed(self):
        reference_id = uuid.uuid4()
        self.assertEqual(DocumentReference.order(str(reference_id)).id, reference_id)


class PaymentApiTests(PaymentTestMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="cashier", password="pass1234", role="staff")
        self.manager = user_model.objects.create_user(username="manager", password="pass1234", role="manager")
        self.order = self.create_purchase_order()

    def _create(self, amount, **extra):
        return self.client.post(
            "/api/v1/payments/",
            {
                "reference_type": "purchase_order",
                "reference_id": str(self.order.id),
                "amount": amount,
                "method": "cash",
                **extra,
            },
            format="json",
        )

    def test_create_complete_and_refund(self):
        self.client.force_authenticate(user=self.staff)
        response = self._create("100.00")
        self.assertEqual(response.status_code, 201, response.content)
        payment = response.json()
        self.assertEqual(payment["status"], "pending")
        self.assertIsNone(payment["overpayment_warning"])

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(f"/api/v1/payments/{payment['id']}/complete/")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.post(f"/api/v1/payments/{payment['id']}/complete/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "completed")

        response = self.client.get("/api/v1/payments/balance/", {"reference_type": "purchase_order", "reference_id": str(self.order.id)})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["remaining_balance"], "0.00")
        self.assertEqual(response.json()["payment_status"], "paid")

        response = self.client.post(f"/api/v1/payments/{payment['id']}/refund/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "refunded")

    def test_overpayment_requires_confirmation(self):
        self.client.force_authenticate(user=self.staff)

        response = self._create("150.00")
        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "overpayment_not_confirmed")
        self.assertEqual(body["errors"]["remaining_balance"], "100.00")
        self.assertFalse(Payment.objects.exists())

        with self.assertLogs("payments.reconciler", level="WARNING"):
            response = self._create("150.00", confirm_overpayment=True)
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["overpayment_warning"])

    @override_settings(PAYMENT_OVERPAYMENT_POLICY="reject")
    def test_reject_policy_setting(self):
        self.client.force_authenticate(user=self.staff)

        response = self._create("150.00", confirm_overpayment=True)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_amount")

    def test_invalid_amount_envelope(self):
        self.client.force_authenticate(user=self.staff)

        response = self._create("0")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_amount")
        self.assertIn("amount", response.json()["errors"])

    def test_patch_completed_payment_is_locked(self):
        self.client.force_authenticate(user=self.manager)
        payment = self._create("10.00").json()
        self.client.post(f"/api/v1/payments/{payment['id']}/complete/")

        response = self.client.patch(f"/api/v1/payments/{payment['id']}/", {"notes": "edit"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "payment_locked")

        response = self.client.delete(f"/api/v1/payments/{payment['id']}/")
        self.assertEqual(response.status_code, 409)

    def test_patch_rejects_reference_changes(self):
        self.client.force_authenticate(user=self.staff)
        payment = self._create("10.00").json()

        response = self.client.patch(f"/api/v1/payments/{payment['id']}/", {"reference_id": str(uuid.uuid4())}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("reference_id", response.json()["errors"])

    def test_unknown_reference_is_not_found(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post(
            "/api/v1/payments/",
            {"reference_type": "order", "reference_id": str(uuid.uuid4()), "amount": "5.00", "method": "card"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")
