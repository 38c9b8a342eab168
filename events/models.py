import uuid

from django.db import models


class EventOutbox(models.Model):
    """Durable log of domain events, read by notification and audit collaborators."""

    id = models.BigAutoField(primary_key=True)
    event_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    name = models.CharField(max_length=64)
    entity = models.CharField(max_length=64)
    entity_id = models.UUIDField()
    payload = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["name", "id"], name="eventoutbox_name_idx"),
            models.Index(fields=["entity", "entity_id"], name="eventoutbox_entity_idx"),
        ]
