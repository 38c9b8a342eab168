from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import InvalidDateRange
from events.sinks import STOCK_CHANGED, RecordingEventSink
from inventory.batches import expire_batches, next_batch_code, validate_batch_dates
from inventory.ledger import InventoryLedger, derive_quantities, find_mismatches, ledger_balance
from inventory.models import Batch, InventoryRecord, MovementEntry, Product


def make_batch(product, *, code=None, quantity="10", expires_in=90, status=Batch.Status.ACTIVE):
    today = timezone.localdate()
    return Batch.objects.create(
        code=code or next_batch_code(),
        product=product,
        quantity=Decimal(quantity),
        cost_price=Decimal("2.00"),
        selling_price=Decimal("3.50"),
        manufactured_on=today - timedelta(days=30),
        expires_on=today + timedelta(days=expires_in),
        status=status,
    )


class InventoryLedgerTests(TestCase):
    def setUp(self):
        self.sink = RecordingEventSink()
        self.ledger = InventoryLedger(self.sink)
        self.product = Product.objects.create(sku="MILK-1", name="Milk 1L", cost_price=Decimal("2.00"))
        self.batch = make_batch(self.product)
        self.record = self.ledger.open_record(self.batch, location_label="Aisle 3")

    def test_new_record_starts_at_zero(self):
        self.assertEqual(self.record.quantity_on_hand, Decimal("0"))
        self.assertEqual(self.record.quantity_on_shelf, Decimal("0"))
        self.assertEqual(self.record.quantity_reserved, Decimal("0"))
        self.assertEqual(ledger_balance(self.batch), Decimal("0"))

    def test_append_in_updates_record_and_emits_stock_changed(self):
        self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("10"), reason="Purchase Order Receipt")

        self.record.refresh_from_db()
        self.assertEqual(self.record.quantity_on_hand, Decimal("10"))
        self.assertEqual(len(self.sink.named(STOCK_CHANGED)), 1)
        event = self.sink.events[0]
        self.assertEqual(event.entity_id, self.batch.id)
        self.assertEqual(event.payload["quantity_on_hand"], Decimal("10"))

    def test_append_collects_events_when_list_given(self):
        collected = []
        self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("1"), reason="Adjustment", events=collected)

        self.assertEqual(len(collected), 1)
        self.assertEqual(self.sink.events, [])

    def test_append_rejects_non_positive_quantity(self):
        with self.assertRaises(ValidationError):
            self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("0"), reason="Adjustment")
        self.assertFalse(MovementEntry.objects.exists())

    def test_out_movement_cannot_exceed_bucket(self):
        self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("2"), reason="Adjustment")

        with self.assertRaises(ValidationError):
            self.ledger.append(self.record, direction=MovementEntry.Direction.OUT, quantity=Decimal("3"), reason="Damaged")

        self.record.refresh_from_db()
        self.assertEqual(self.record.quantity_on_hand, Decimal("2"))
        self.assertEqual(MovementEntry.objects.count(), 1)

    def test_move_to_shelf_keeps_ledger_balanced(self):
        self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("10"), reason="Purchase Order Receipt")

        record = self.ledger.move_to_shelf(self.record, Decimal("4"))

        self.assertEqual(record.quantity_on_hand, Decimal("6"))
        self.assertEqual(record.quantity_on_shelf, Decimal("4"))
        self.assertEqual(derive_quantities(self.batch), {"quantity_on_hand": Decimal("6"), "quantity_on_shelf": Decimal("4")})
        self.assertEqual(ledger_balance(self.batch), record.total_quantity)
        self.assertEqual(list(find_mismatches([self.batch])), [])

    def test_movement_entries_are_append_only(self):
        entry = self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("1"), reason="Adjustment")

        entry.reason = "Edited"
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()

    def test_find_mismatches_reports_drift(self):
        self.ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("5"), reason="Adjustment")
        InventoryRecord.objects.filter(pk=self.record.pk).update(quantity_on_hand=Decimal("7"))

        batch = Batch.objects.select_related("inventory_record").get(pk=self.batch.pk)
        mismatches = list(find_mismatches([batch]))

        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0][1]["quantity_on_hand"], Decimal("5"))


class BatchRulesTests(TestCase):
    def test_expiry_must_follow_manufacturing_date(self):
        today = timezone.localdate()
        with self.assertRaises(InvalidDateRange) as ctx:
            validate_batch_dates(today + timedelta(days=10), today + timedelta(days=10))
        self.assertEqual(ctx.exception.field, "expires_on")

    def test_expiry_must_be_in_the_future(self):
        today = timezone.localdate()
        with self.assertRaises(InvalidDateRange) as ctx:
            validate_batch_dates(today - timedelta(days=10), today)
        self.assertEqual(ctx.exception.errors, {"expires_on": ["Expiry date must be in the future."]})

    def test_batch_codes_are_sequential_per_day(self):
        product = Product.objects.create(sku="EGG-12", name="Eggs")
        first = make_batch(product)
        second = make_batch(product)

        prefix = timezone.now().strftime("B-%Y%m%d-")
        self.assertEqual(first.code, f"{prefix}0001")
        self.assertEqual(second.code, f"{prefix}0002")

    def test_expiry_flags(self):
        product = Product.objects.create(sku="YOG-1", name="Yogurt")
        soon = make_batch(product, expires_in=5)
        later = make_batch(product, expires_in=120)

        self.assertTrue(soon.is_near_expiry)
        self.assertFalse(soon.is_expired)
        self.assertEqual(soon.days_until_expiry, 5)
        self.assertFalse(later.is_near_expiry)

    def test_expire_batches_marks_only_past_active_batches(self):
        product = Product.objects.create(sku="BREAD-1", name="Bread")
        fresh = make_batch(product, expires_in=10)
        stale = make_batch(product, expires_in=3)
        disposed = make_batch(product, expires_in=3, status=Batch.Status.DISPOSED)

        updated = expire_batches(today=timezone.localdate() + timedelta(days=3))

        self.assertEqual(updated, 1)
        stale.refresh_from_db()
        fresh.refresh_from_db()
        disposed.refresh_from_db()
        self.assertEqual(stale.status, Batch.Status.EXPIRED)
        self.assertEqual(fresh.status, Batch.Status.ACTIVE)
        self.assertEqual(disposed.status, Batch.Status.DISPOSED)


class InventoryCommandTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(sku="JUICE-1", name="Orange Juice")
        self.batch = make_batch(self.product)
        ledger = InventoryLedger()
        self.record = ledger.open_record(self.batch)
        ledger.append(self.record, direction=MovementEntry.Direction.IN, quantity=Decimal("8"), reason="Adjustment")

    def test_check_ledger_passes_for_consistent_records(self):
        out = StringIO()
        call_command("check_ledger", stdout=out)
        self.assertIn("consistent", out.getvalue())

    def test_check_ledger_fails_on_drift(self):
        InventoryRecord.objects.filter(pk=self.record.pk).update(quantity_on_shelf=Decimal("1"))

        with self.assertRaises(CommandError):
            call_command("check_ledger", stdout=StringIO(), stderr=StringIO())

    def test_expire_batches_command(self):
        out = StringIO()
        as_of = (timezone.localdate() + timedelta(days=365)).isoformat()
        call_command("expire_batches", "--as-of", as_of, stdout=out)

        self.batch.refresh_from_db()
        self.assertEqual(self.batch.status, Batch.Status.EXPIRED)
        self.assertIn("Expired 1 batches.", out.getvalue())


class BatchApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="staff", password="pass1234", role="staff")
        self.warehouse = user_model.objects.create_user(username="warehouse", password="pass1234", role="warehouse")

        self.product = Product.objects.create(sku="CHEESE-1", name="Cheese")
        self.near = make_batch(self.product, expires_in=10)
        self.far = make_batch(self.product, expires_in=200)
        ledger = InventoryLedger()
        for batch in (self.near, self.far):
            record = ledger.open_record(batch)
            ledger.append(record, direction=MovementEntry.Direction.IN, quantity=Decimal("10"), reason="Adjustment")

    def test_near_expiry_filter(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/batches/", {"near_expiry": 30})

        self.assertEqual(response.status_code, 200)
        ids = [item["id"] for item in response.json()["results"]]
        self.assertEqual(ids, [str(self.near.id)])

    def test_invalid_status_filter_is_rejected(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/batches/", {"status": "gone"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_move_to_shelf_requires_inventory_move_capability(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(f"/api/v1/batches/{self.near.id}/move-to-shelf/", {"quantity": "2"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_move_to_shelf_and_list_movements(self):
        self.client.force_authenticate(user=self.warehouse)

        response = self.client.post(f"/api/v1/batches/{self.near.id}/move-to-shelf/", {"quantity": "4"}, format="json")

        self.assertEqual(response.status_code, 200)
        record = response.json()["inventory_record"]
        self.assertEqual(record["quantity_on_hand"], "6.00")
        self.assertEqual(record["quantity_on_shelf"], "4.00")

        movements = self.client.get(f"/api/v1/batches/{self.near.id}/movements/").json()
        self.assertEqual(movements["count"], 3)
        self.assertEqual(sorted(row["direction"] for row in movements["results"]), ["in", "in", "out"])

    def test_move_to_shelf_more_than_on_hand_is_rejected(self):
        self.client.force_authenticate(user=self.warehouse)

        response = self.client.post(f"/api/v1/batches/{self.near.id}/move-to-shelf/", {"quantity": "40"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(MovementEntry.objects.filter(batch=self.near).count(), 1)
