import threading
from datetime import timedelta
from decimal import Decimal
from unittest import mock, skipUnless

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import (
    AlreadyReceived,
    IncompleteReceiving,
    InvalidDateRange,
    InvalidReceivedQuantity,
    InvalidTransition,
    OrderLocked,
    ReceivingFailed,
)
from core.models import AuditLog
from events.models import EventOutbox
from events.sinks import PURCHASE_ORDER_RECEIVED, PURCHASE_ORDER_STATUS_CHANGED, STOCK_CHANGED, RecordingEventSink
from inventory.ledger import InventoryLedger, ledger_balance
from inventory.models import Batch, InventoryRecord, MovementEntry, Product, Supplier
from payments.models import Payment
from payments.reconciler import PaymentReconciler
from payments.references import DocumentReference
from procurement.models import PurchaseOrder, PurchaseOrderLine
from procurement.receiving import ReceivingCoordinator
from procurement.workflow import PurchaseOrderWorkflow


def create_catalog():
    supplier = Supplier.objects.create(code="SUP-1", name="Fresh Farms")
    milk = Product.objects.create(sku="MILK-1", name="Milk 1L", cost_price=Decimal("2.00"), selling_price=Decimal("3.25"))
    eggs = Product.objects.create(sku="EGG-12", name="Eggs x12", cost_price=Decimal("4.00"))
    return supplier, milk, eggs


def create_order(supplier, lines, **kwargs):
    return PurchaseOrderWorkflow().create(
        supplier=supplier,
        order_date=kwargs.pop("order_date", timezone.localdate()),
        lines=[{"product": product, "quantity": Decimal(qty), "unit_cost": Decimal(cost)} for product, qty, cost in lines],
        **kwargs,
    )


def receipt(quantity, **overrides):
    today = timezone.localdate()
    payload = {
        "quantity": Decimal(quantity),
        "manufactured_on": today - timedelta(days=10),
        "expires_on": today + timedelta(days=180),
    }
    payload.update(overrides)
    return payload


class PurchaseOrderWorkflowTests(TestCase):
    def setUp(self):
        self.sink = RecordingEventSink()
        self.workflow = PurchaseOrderWorkflow(self.sink)
        self.supplier, self.milk, self.eggs = create_catalog()

    def test_create_computes_totals_and_number(self):
        order = create_order(
            self.supplier,
            [(self.milk, "10", "2.50"), (self.eggs, "5", "4.00")],
            shipping_fee=Decimal("5.00"),
            discount_percentage=Decimal("10"),
        )

        self.assertEqual(order.status, PurchaseOrder.Status.PENDING)
        self.assertEqual(order.payment_status, PurchaseOrder.PaymentStatus.UNPAID)
        self.assertEqual(order.subtotal, Decimal("45.00"))
        self.assertEqual(order.discount_amount, Decimal("4.50"))
        self.assertEqual(order.total, Decimal("45.50"))
        self.assertEqual(order.po_number, timezone.now().strftime("PO-%Y%m%d-0001"))
        self.assertEqual([line.line_total for line in order.lines.all()], [Decimal("25.00"), Decimal("20.00")])

    def test_approve_and_cancel_transitions(self):
        order = create_order(self.supplier, [(self.milk, "1", "2.00")])

        order = self.workflow.approve(order)
        self.assertEqual(order.status, PurchaseOrder.Status.APPROVED)
        self.assertIsNotNone(order.approved_at)

        order = self.workflow.cancel(order)
        self.assertEqual(order.status, PurchaseOrder.Status.CANCELLED)
        self.assertEqual(
            [(event.payload["from_status"], event.payload["to_status"]) for event in self.sink.named(PURCHASE_ORDER_STATUS_CHANGED)],
            [("pending", "approved"), ("approved", "cancelled")],
        )

    def test_terminal_orders_reject_transitions(self):
        order = self.workflow.cancel(create_order(self.supplier, [(self.milk, "1", "2.00")]))

        with self.assertRaises(InvalidTransition):
            self.workflow.approve(order)
        with self.assertRaises(InvalidTransition):
            self.workflow.cancel(order)

    def test_mark_received_requires_every_line(self):
        order = self.workflow.approve(create_order(self.supplier, [(self.milk, "1", "2.00")]))

        with self.assertRaises(IncompleteReceiving):
            self.workflow.mark_received(order)

    def test_mark_received_requires_approved(self):
        order = create_order(self.supplier, [(self.milk, "1", "2.00")])

        with self.assertRaises(InvalidTransition):
            self.workflow.mark_received(order)

    def test_pending_order_allows_full_edit(self):
        order = create_order(self.supplier, [(self.milk, "10", "2.00")])

        order = self.workflow.apply_edit(
            order,
            {"shipping_fee": Decimal("3.00"), "notes": "Call before delivery"},
            lines=[{"product": self.eggs, "quantity": Decimal("2"), "unit_cost": Decimal("4.00")}],
        )

        self.assertEqual(order.lines.count(), 1)
        self.assertEqual(order.subtotal, Decimal("8.00"))
        self.assertEqual(order.total, Decimal("11.00"))
        self.assertEqual(order.notes, "Call before delivery")

    def test_line_edit_recomputes_payment_status(self):
        order = create_order(self.supplier, [(self.milk, "10", "100.00")])
        reconciler = PaymentReconciler()
        payment, _ = reconciler.create_payment(
            DocumentReference.purchase_order(order.id), amount=Decimal("1000.00"), method=Payment.Method.CASH
        )
        reconciler.complete_payment(payment)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PurchaseOrder.PaymentStatus.PAID)

        order = self.workflow.apply_edit(
            order, {}, lines=[{"product": self.milk, "quantity": Decimal("20"), "unit_cost": Decimal("100.00")}]
        )

        self.assertEqual(order.total, Decimal("2000.00"))
        self.assertEqual(order.payment_status, PurchaseOrder.PaymentStatus.PARTIAL)
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PurchaseOrder.PaymentStatus.PARTIAL)

    def test_approved_order_only_allows_delivery_date(self):
        order = self.workflow.approve(create_order(self.supplier, [(self.milk, "10", "2.00")]))
        new_date = timezone.localdate() + timedelta(days=7)

        with self.assertRaises(OrderLocked) as ctx:
            self.workflow.apply_edit(order, {"notes": "late", "shipping_fee": Decimal("1.00")})
        self.assertEqual(sorted(ctx.exception.errors), ["notes", "shipping_fee"])

        order = self.workflow.apply_edit(order, {"expected_delivery_date": new_date})
        self.assertEqual(order.expected_delivery_date, new_date)

    def test_delivery_date_cannot_precede_order_date(self):
        order = create_order(self.supplier, [(self.milk, "1", "2.00")])

        with self.assertRaises(ValidationError) as ctx:
            self.workflow.apply_edit(order, {"expected_delivery_date": order.order_date - timedelta(days=1)})
        self.assertIn("expected_delivery_date", ctx.exception.detail)

    def test_delete_only_terminal_orders(self):
        order = create_order(self.supplier, [(self.milk, "1", "2.00")])

        with self.assertRaises(OrderLocked):
            self.workflow.delete(order)

        self.workflow.delete(self.workflow.cancel(order))
        self.assertFalse(PurchaseOrder.objects.filter(pk=order.pk).exists())


class ReceivingCoordinatorTests(TestCase):
    def setUp(self):
        self.sink = RecordingEventSink()
        self.coordinator = ReceivingCoordinator(self.sink)
        self.supplier, self.milk, self.eggs = create_catalog()
        self.order = PurchaseOrderWorkflow().approve(
            create_order(self.supplier, [(self.milk, "10", "2.00"), (self.eggs, "5", "4.00")])
        )
        self.line_1, self.line_2 = list(self.order.lines.all())

    def test_two_line_order_is_received_after_last_line(self):
        first = self.coordinator.receive_line(self.line_1.id, **receipt("10", location_label="Cold room"))

        self.assertFalse(first.order_received)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, PurchaseOrder.Status.APPROVED)
        self.assertEqual(first.batch.quantity, Decimal("10"))
        self.assertEqual(first.batch.cost_price, Decimal("2.00"))
        self.assertEqual(first.batch.selling_price, Decimal("3.25"))
        self.assertEqual(first.record.quantity_on_hand, Decimal("10"))
        self.assertEqual(first.record.location_label, "Cold room")
        self.assertEqual(first.movement.reason, "Purchase Order Receipt")
        self.assertEqual(first.movement.source_ref_id, self.order.id)
        self.assertEqual(first.line.batch_id, first.batch.id)

        second = self.coordinator.receive_line(self.line_2.id, **receipt("5"))

        self.assertTrue(second.order_received)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, PurchaseOrder.Status.RECEIVED)
        self.assertIsNotNone(self.order.received_at)
        # No standing selling price on eggs, so the batch sells at cost.
        self.assertEqual(second.batch.selling_price, Decimal("4.00"))
        self.assertEqual(Batch.objects.count(), 2)
        self.assertEqual(len(self.sink.named(STOCK_CHANGED)), 2)
        received = self.sink.named(PURCHASE_ORDER_RECEIVED)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].payload["status"], PurchaseOrder.Status.RECEIVED)

    def test_partial_quantity_is_recorded_on_line(self):
        result = self.coordinator.receive_line(self.line_1.id, **receipt("7"))

        self.assertEqual(result.line.received_quantity, Decimal("7"))
        self.assertIsNotNone(result.line.received_at)
        self.assertEqual(ledger_balance(result.batch), Decimal("7"))

    def test_over_quantity_creates_nothing(self):
        with self.assertRaises(InvalidReceivedQuantity) as ctx:
            self.coordinator.receive_line(self.line_1.id, **receipt("15"))

        self.assertEqual(list(ctx.exception.errors), ["quantity"])
        self.assertFalse(Batch.objects.exists())
        self.assertFalse(InventoryRecord.objects.exists())
        self.assertFalse(MovementEntry.objects.exists())
        self.line_1.refresh_from_db()
        self.assertIsNone(self.line_1.batch_id)
        self.assertEqual(self.sink.events, [])

    def test_zero_quantity_is_rejected(self):
        with self.assertRaises(InvalidReceivedQuantity):
            self.coordinator.receive_line(self.line_1.id, **receipt("0"))

    def test_invalid_dates_are_rejected_before_any_write(self):
        today = timezone.localdate()
        with self.assertRaises(InvalidDateRange) as ctx:
            self.coordinator.receive_line(
                self.line_1.id,
                **receipt("10", manufactured_on=today, expires_on=today - timedelta(days=1)),
            )

        self.assertEqual(ctx.exception.field, "expires_on")
        self.assertFalse(Batch.objects.exists())

    def test_second_receive_of_same_line_is_rejected(self):
        self.coordinator.receive_line(self.line_1.id, **receipt("10"))

        with self.assertRaises(AlreadyReceived):
            self.coordinator.receive_line(self.line_1.id, **receipt("10"))
        self.assertEqual(Batch.objects.count(), 1)

    def test_pending_order_lines_cannot_be_received(self):
        pending = create_order(self.supplier, [(self.milk, "1", "2.00")])

        with self.assertRaises(InvalidTransition):
            self.coordinator.receive_line(pending.lines.get().id, **receipt("1"))

    def test_stale_line_snapshot_loses_guarded_update(self):
        stale = PurchaseOrderLine.objects.get(pk=self.line_1.pk)
        self.coordinator.receive_line(self.line_1.id, **receipt("10"))

        with mock.patch.object(ReceivingCoordinator, "_lock_line", return_value=stale):
            with self.assertRaises(AlreadyReceived):
                self.coordinator.receive_line(self.line_1.id, **receipt("10"))

        self.assertEqual(Batch.objects.count(), 1)
        self.assertEqual(InventoryRecord.objects.count(), 1)
        self.assertEqual(MovementEntry.objects.count(), 1)

    def test_failure_inside_unit_of_work_rolls_everything_back(self):
        with mock.patch.object(InventoryLedger, "append", side_effect=RuntimeError("disk full")):
            with self.assertLogs("procurement.receiving", level="ERROR"):
                with self.assertRaises(ReceivingFailed) as ctx:
                    self.coordinator.receive_line(self.line_1.id, **receipt("10"))

        self.assertIsInstance(ctx.exception.cause, RuntimeError)
        self.assertFalse(Batch.objects.exists())
        self.assertFalse(InventoryRecord.objects.exists())
        self.assertFalse(MovementEntry.objects.exists())
        self.assertEqual(self.sink.events, [])

        result = self.coordinator.receive_line(self.line_1.id, **receipt("10"))
        self.assertEqual(result.line.batch_id, result.batch.id)

    def test_received_order_locks_lines_but_not_delivery_date(self):
        self.coordinator.receive_line(self.line_1.id, **receipt("10"))
        self.coordinator.receive_line(self.line_2.id, **receipt("5"))
        self.order.refresh_from_db()
        workflow = PurchaseOrderWorkflow()

        with self.assertRaises(OrderLocked):
            workflow.apply_edit(self.order, {}, lines=[{"product": self.milk, "quantity": Decimal("1"), "unit_cost": Decimal("1")}])

        new_date = timezone.localdate() + timedelta(days=3)
        order = workflow.apply_edit(self.order, {"expected_delivery_date": new_date})
        self.assertEqual(order.expected_delivery_date, new_date)
        self.assertEqual(order.status, PurchaseOrder.Status.RECEIVED)

    def test_deleting_received_order_keeps_batches_and_ledger(self):
        self.coordinator.receive_line(self.line_1.id, **receipt("10"))
        self.coordinator.receive_line(self.line_2.id, **receipt("5"))

        PurchaseOrderWorkflow().delete(self.order)

        self.assertEqual(Batch.objects.count(), 2)
        self.assertEqual(MovementEntry.objects.filter(source_ref_id=self.order.id).count(), 2)

    def test_receive_lines_rejects_foreign_lines(self):
        other = PurchaseOrderWorkflow().approve(create_order(self.supplier, [(self.milk, "1", "2.00")]))

        with self.assertRaises(ValidationError):
            self.coordinator.receive_lines(self.order, [{"line_id": other.lines.get().id, **receipt("1")}])
        self.assertFalse(Batch.objects.exists())


@skipUnless(connection.vendor == "postgresql", "Row-level locking needs PostgreSQL.")
class ConcurrentReceivingTests(TransactionTestCase):
    def test_parallel_receives_of_one_line_create_one_batch(self):
        supplier, milk, _ = create_catalog()
        order = PurchaseOrderWorkflow().approve(create_order(supplier, [(milk, "10", "2.00"), (milk, "1", "2.00")]))
        line = order.lines.first()
        barrier = threading.Barrier(2)
        outcomes = []

        def worker():
            try:
                barrier.wait()
                ReceivingCoordinator().receive_line(line.id, **receipt("10"))
                outcomes.append("received")
            except AlreadyReceived:
                outcomes.append("already_received")
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["already_received", "received"])
        self.assertEqual(Batch.objects.count(), 1)
        self.assertEqual(MovementEntry.objects.count(), 1)


class PurchaseOrderApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.manager = user_model.objects.create_user(username="manager", password="pass1234", role="manager")
        self.warehouse = user_model.objects.create_user(username="warehouse", password="pass1234", role="warehouse")
        self.staff = user_model.objects.create_user(username="staff", password="pass1234", role="staff")
        self.supplier, self.milk, self.eggs = create_catalog()

    def _create_order(self):
        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            "/api/v1/purchase-orders/",
            {
                "supplier": str(self.supplier.id),
                "order_date": timezone.localdate().isoformat(),
                "shipping_fee": "5.00",
                "discount_percentage": "10",
                "lines": [
                    {"product": str(self.milk.id), "quantity": "10", "unit_cost": "2.50"},
                    {"product": str(self.eggs.id), "quantity": "5", "unit_cost": "4.00"},
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def _receipt_payload(self, line_id, quantity):
        today = timezone.localdate()
        return {
            "line_id": line_id,
            "quantity": quantity,
            "manufactured_on": (today - timedelta(days=5)).isoformat(),
            "expires_on": (today + timedelta(days=90)).isoformat(),
        }

    def test_create_and_approve_order(self):
        payload = self._create_order()

        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["total"], "45.50")
        self.assertEqual(len(payload["lines"]), 2)

        response = self.client.post(f"/api/v1/purchase-orders/{payload['id']}/approve/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "approved")
        self.assertTrue(AuditLog.objects.filter(action="purchase_order.approve", entity_id=payload["id"]).exists())
        self.assertTrue(EventOutbox.objects.filter(name=PURCHASE_ORDER_STATUS_CHANGED).exists())

    def test_order_requires_lines(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(
            "/api/v1/purchase-orders/",
            {"supplier": str(self.supplier.id), "order_date": timezone.localdate().isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("lines", response.json()["errors"])

    def test_staff_cannot_create_orders(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post("/api/v1/purchase-orders/", {}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_receive_all_lines_over_api(self):
        payload = self._create_order()
        self.client.post(f"/api/v1/purchase-orders/{payload['id']}/approve/")
        line_ids = [line["id"] for line in payload["lines"]]

        self.client.force_authenticate(user=self.warehouse)
        response = self.client.post(
            f"/api/v1/purchase-orders/{payload['id']}/receive/",
            {"lines": [self._receipt_payload(line_ids[0], "10"), self._receipt_payload(line_ids[1], "5")]},
            format="json",
        )

        self.assertEqual(response.status_code, 201, response.content)
        body = response.json()
        self.assertEqual(body["purchase_order"]["status"], "received")
        self.assertEqual(len(body["receipts"]), 2)
        self.assertEqual(body["receipts"][0]["quantity_on_hand"], "10.00")
        self.assertEqual(EventOutbox.objects.filter(name=STOCK_CHANGED).count(), 2)
        self.assertEqual(EventOutbox.objects.filter(name=PURCHASE_ORDER_RECEIVED).count(), 1)
        self.supplier.refresh_from_db()
        self.assertEqual(self.supplier.current_debt, Decimal("45.50"))

    def test_receive_errors_use_envelope(self):
        payload = self._create_order()
        self.client.post(f"/api/v1/purchase-orders/{payload['id']}/approve/")
        line_id = payload["lines"][0]["id"]
        self.client.force_authenticate(user=self.warehouse)
        url = f"/api/v1/purchase-orders/{payload['id']}/receive/"

        response = self.client.post(url, self._receipt_payload(line_id, "15"), format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_received_quantity")
        self.assertIn("quantity", response.json()["errors"])

        self.assertEqual(self.client.post(url, self._receipt_payload(line_id, "10"), format="json").status_code, 201)

        response = self.client.post(url, self._receipt_payload(line_id, "10"), format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "already_received")

    def test_received_order_patch_rules(self):
        payload = self._create_order()
        self.client.post(f"/api/v1/purchase-orders/{payload['id']}/approve/")
        self.client.force_authenticate(user=self.warehouse)
        self.client.post(
            f"/api/v1/purchase-orders/{payload['id']}/receive/",
            {"lines": [self._receipt_payload(line["id"], line["quantity"]) for line in payload["lines"]]},
            format="json",
        )
        self.client.force_authenticate(user=self.manager)
        url = f"/api/v1/purchase-orders/{payload['id']}/"

        response = self.client.patch(url, {"notes": "changed"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "order_locked")
        self.assertEqual(list(response.json()["errors"]), ["notes"])

        new_date = (timezone.localdate() + timedelta(days=2)).isoformat()
        response = self.client.patch(url, {"expected_delivery_date": new_date}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["expected_delivery_date"], new_date)

    def test_patch_rejects_read_only_fields(self):
        payload = self._create_order()
        self.client.post(f"/api/v1/purchase-orders/{payload['id']}/approve/")

        response = self.client.patch(
            f"/api/v1/purchase-orders/{payload['id']}/", {"status": "received", "total": "1.00"}, format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(sorted(response.json()["errors"]), ["status", "total"])
        order = PurchaseOrder.objects.get(pk=payload["id"])
        self.assertEqual(order.status, PurchaseOrder.Status.APPROVED)
        self.assertEqual(order.total, Decimal("45.50"))

    def test_delete_pending_order_is_locked(self):
        payload = self._create_order()

        response = self.client.delete(f"/api/v1/purchase-orders/{payload['id']}/")

        self.assertEqual(response.status_code, 409)
        self.assertTrue(PurchaseOrder.objects.filter(pk=payload["id"]).exists())

    def test_balance_endpoint(self):
        payload = self._create_order()

        response = self.client.get(f"/api/v1/purchase-orders/{payload['id']}/balance/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["remaining_balance"], "45.50")
        self.assertFalse(response.json()["overpaid"])
