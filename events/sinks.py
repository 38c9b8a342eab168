"""Event sinks for back-office state changes.

Services never talk to a global broadcaster. They receive an ``EventSink``
and call ``emit`` once a unit of work has succeeded. ``get_event_sink`` builds
the default sink from ``settings.EVENT_SINKS``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from django.conf import settings
from django.utils.module_loading import import_string

from common.utils import to_json_compatible
from events.models import EventOutbox

logger = logging.getLogger(__name__)

PURCHASE_ORDER_RECEIVED = "purchase_order.received"
PURCHASE_ORDER_STATUS_CHANGED = "purchase_order.status_changed"
STOCK_CHANGED = "stock.changed"
PAYMENT_STATUS_CHANGED = "payment.status_changed"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    entity: str
    entity_id: Any
    payload: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entity": self.entity,
            "entity_id": str(self.entity_id),
            "payload": to_json_compatible(dict(self.payload)),
        }


class EventSink(Protocol):
    def emit(self, event: DomainEvent) -> None: ...


class NullEventSink:
    def emit(self, event: DomainEvent) -> None:
        return None


class RecordingEventSink:
    """Keeps emitted events in memory; used by tests."""

    def __init__(self):
        self.events: list[DomainEvent] = []

    def emit(self, event: DomainEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[DomainEvent]:
        return [event for event in self.events if event.name == name]


class OutboxEventSink:
    def emit(self, event: DomainEvent) -> None:
        EventOutbox.objects.create(
            name=event.name,
            entity=event.entity,
            entity_id=event.entity_id,
            payload=event.as_dict(),
        )
        logger.debug("event_emitted", extra={"event_name": event.name})


class CompositeEventSink:
    def __init__(self, sinks):
        self.sinks = list(sinks)

    def emit(self, event: DomainEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)


def get_event_sink() -> EventSink:
    paths = getattr(settings, "EVENT_SINKS", None) or []
    sinks = [import_string(path)() for path in paths]
    if not sinks:
        return NullEventSink()
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventSink(sinks)
