from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from events.sinks import get_event_sink
from payments.references import DocumentReference
from payments.reconciler import PaymentReconciler
from payments.serializers import BalanceSummarySerializer
from procurement.models import PurchaseOrder
from procurement.receiving import ReceivingCoordinator
from procurement.serializers import LineReceiptSerializer, PurchaseOrderSerializer, ReceiveSerializer
from procurement.workflow import PurchaseOrderWorkflow


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save(created_by=self.request.user)
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.update", instance=instance, before_snapshot=before_snapshot, after_snapshot=self.get_serializer(instance).data)


class PurchaseOrderViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = PurchaseOrder.objects.select_related("supplier", "created_by")
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    permission_action_map = {
        "list": "procurement.view",
        "retrieve": "procurement.view",
        "balance": "procurement.view",
        "create": "procurement.manage",
        "partial_update": "procurement.manage",
        "destroy": "procurement.manage",
        "approve": "procurement.approve",
        "cancel": "procurement.approve",
        "receive": "procurement.receive",
    }
    audit_entity = "purchase_order"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status=params["status"])
        if params.get("payment_status"):
            qs = qs.filter(payment_status=params["payment_status"])
        if params.get("supplier"):
            qs = qs.filter(supplier_id=params["supplier"])
        return qs

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        PurchaseOrderWorkflow(get_event_sink()).delete(instance)
        self._audit(action="purchase_order.delete", instance=instance, before_snapshot=before_snapshot)

    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, pk=None):
        return self._transition(request, PurchaseOrderWorkflow(get_event_sink()).approve, "purchase_order.approve")

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        return self._transition(request, PurchaseOrderWorkflow(get_event_sink()).cancel, "purchase_order.cancel")

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        order = self.get_object()
        payload = request.data if "lines" in request.data else {"lines": [request.data]}
        serializer = ReceiveSerializer(data=payload)
        serializer.is_valid(raise_exception=True)

        receipts = ReceivingCoordinator(get_event_sink()).receive_lines(
            order,
            serializer.validated_data["lines"],
            actor=request.user,
        )
        order.refresh_from_db()
        data = self.get_serializer(order).data
        self._audit(
            action="purchase_order.receive",
            instance=order,
            after_snapshot={"receipts": LineReceiptSerializer(receipts, many=True).data, "status": order.status},
        )
        return Response(
            {"purchase_order": data, "receipts": LineReceiptSerializer(receipts, many=True).data},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="balance")
    def balance(self, request, pk=None):
        order = self.get_object()
        summary = PaymentReconciler().balance_summary(DocumentReference.purchase_order(order.id))
        return Response(BalanceSummarySerializer(summary).data)

    def _transition(self, request, transition, audit_action):
        order = self.get_object()
        before_snapshot = self.get_serializer(order).data
        order = transition(order)
        data = self.get_serializer(order).data
        self._audit(action=audit_action, instance=order, before_snapshot=before_snapshot, after_snapshot=data)
        return Response(data)
