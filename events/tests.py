import uuid

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from events.models import EventOutbox
from events.sinks import (
    STOCK_CHANGED,
    CompositeEventSink,
    DomainEvent,
    NullEventSink,
    OutboxEventSink,
    RecordingEventSink,
    get_event_sink,
)


def stock_event(quantity="1.00"):
    batch_id = uuid.uuid4()
    return DomainEvent(name=STOCK_CHANGED, entity="batch", entity_id=batch_id, payload={"batch_id": batch_id, "quantity_on_hand": quantity})


class EventSinkTests(TestCase):
    def test_outbox_sink_persists_json_payload(self):
        event = stock_event()

        OutboxEventSink().emit(event)

        row = EventOutbox.objects.get()
        self.assertEqual(row.name, STOCK_CHANGED)
        self.assertEqual(row.entity_id, event.entity_id)
        self.assertEqual(row.payload["payload"]["batch_id"], str(event.entity_id))

    def test_composite_sink_fans_out(self):
        first, second = RecordingEventSink(), RecordingEventSink()

        CompositeEventSink([first, second]).emit(stock_event())

        self.assertEqual(len(first.events), 1)
        self.assertEqual(len(second.events), 1)

    @override_settings(EVENT_SINKS=[])
    def test_no_configured_sinks_gives_null_sink(self):
        self.assertIsInstance(get_event_sink(), NullEventSink)

    @override_settings(EVENT_SINKS=["events.sinks.OutboxEventSink"])
    def test_single_configured_sink_is_used_directly(self):
        self.assertIsInstance(get_event_sink(), OutboxEventSink)


class EventPullTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.manager = user_model.objects.create_user(username="notifier", password="pass1234", role="manager")
        self.staff = user_model.objects.create_user(username="clerk", password="pass1234", role="staff")
        sink = OutboxEventSink()
        for quantity in ("1.00", "2.00", "3.00"):
            sink.emit(stock_event(quantity))
        sink.emit(DomainEvent(name="payment.status_changed", entity="payment", entity_id=uuid.uuid4(), payload={}))

    def test_pull_pages_through_outbox(self):
        self.client.force_authenticate(user=self.manager)

        first = self.client.get("/api/v1/events/pull", {"limit": 2}).json()
        self.assertTrue(first["has_more"])
        self.assertEqual([event["payload"]["quantity_on_hand"] for event in first["events"]], ["1.00", "2.00"])

        second = self.client.get("/api/v1/events/pull", {"cursor": first["server_cursor"], "limit": 2}).json()
        self.assertFalse(second["has_more"])
        self.assertEqual([event["name"] for event in second["events"]], [STOCK_CHANGED, "payment.status_changed"])

    def test_pull_filters_by_name(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/events/pull", {"name": "payment.status_changed"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["events"]), 1)

    def test_invalid_limit_is_rejected(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/events/pull", {"limit": 0})

        self.assertEqual(response.status_code, 400)
        self.assertIn("limit", response.json()["errors"])

    def test_staff_cannot_pull_events(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/events/pull")

        self.assertEqual(response.status_code, 403)
