from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from events.sinks import get_event_sink
from inventory.batches import near_expiry
from inventory.ledger import InventoryLedger
from inventory.models import Batch, InventoryRecord, Location, Product, Supplier
from inventory.serializers import (
    BatchSerializer,
    LocationSerializer,
    MovementEntrySerializer,
    MoveToShelfSerializer,
    ProductSerializer,
    SupplierSerializer,
)

READ_ACTIONS = {"list": "inventory.view", "retrieve": "inventory.view"}


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.filter(is_active=True).order_by("name")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = READ_ACTIONS


class SupplierViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Supplier.objects.order_by("name")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = READ_ACTIONS


class LocationViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Location.objects.filter(is_active=True).order_by("code")
    serializer_class = LocationSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = READ_ACTIONS


class BatchViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Batch.objects.select_related("product", "inventory_record__location")
    serializer_class = BatchSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {**READ_ACTIONS, "movements": "inventory.view", "move_to_shelf": "inventory.move"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("expires_on", "code")
        params = self.request.query_params

        status_filter = params.get("status")
        if status_filter:
            if status_filter not in Batch.Status.values:
                raise ValidationError({"status": [f"Unknown batch status '{status_filter}'."]})
            qs = qs.filter(status=status_filter)
        product_id = params.get("product")
        if product_id:
            qs = qs.filter(product_id=product_id)
        days = params.get("near_expiry")
        if days is not None:
            try:
                days = int(days)
            except ValueError:
                raise ValidationError({"near_expiry": ["Must be a whole number of days."]})
            qs = near_expiry(qs, days=days)
        return qs

    @action(detail=True, methods=["get"], url_path="movements")
    def movements(self, request, pk=None):
        batch = self.get_object()
        entries = batch.movements.select_related("actor").order_by("created_at")
        page = self.paginate_queryset(entries)
        if page is not None:
            return self.get_paginated_response(MovementEntrySerializer(page, many=True).data)
        return Response(MovementEntrySerializer(entries, many=True).data)

    @action(detail=True, methods=["post"], url_path="move-to-shelf")
    def move_to_shelf(self, request, pk=None):
        batch = self.get_object()
        serializer = MoveToShelfSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        record = InventoryRecord.objects.get(batch=batch)
        before_snapshot = BatchSerializer(batch).data["inventory_record"]
        InventoryLedger(get_event_sink()).move_to_shelf(
            record,
            serializer.validated_data["quantity"],
            actor=request.user,
            notes=serializer.validated_data["notes"],
        )
        batch = self.get_queryset().get(pk=batch.pk)
        data = self.get_serializer(batch).data
        create_audit_log_from_request(
            request,
            action="batch.move_to_shelf",
            entity="batch",
            entity_id=batch.id,
            before_snapshot=before_snapshot,
            after_snapshot=data["inventory_record"],
        )
        return Response(data)
