from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.permissions import RoleCapabilityPermission
from events.models import EventOutbox
from events.serializers import EventPullSerializer


class EventPullView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "events.view"}

    def get(self, request):
        serializer = EventPullSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)

        cursor = serializer.validated_data["cursor"]
        limit = serializer.validated_data["limit"]
        name = serializer.validated_data.get("name")

        events_qs = EventOutbox.objects.filter(id__gt=cursor).order_by("id")
        if name:
            events_qs = events_qs.filter(name=name)
        events = list(events_qs[: limit + 1])
        has_more = len(events) > limit
        events = events[:limit]

        return Response(
            {
                "server_cursor": events[-1].id if events else cursor,
                "events": [
                    {
                        "cursor": event.id,
                        "event_id": str(event.event_id),
                        "name": event.name,
                        "entity": event.entity,
                        "entity_id": str(event.entity_id),
                        "payload": (event.payload or {}).get("payload", {}),
                        "created_at": event.created_at,
                    }
                    for event in events
                ],
                "has_more": has_more,
            }
        )
