from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from events.sinks import get_event_sink
from payments.models import Payment
from payments.reconciler import PaymentReconciler
from payments.references import DocumentReference
from payments.serializers import (
    BalanceQuerySerializer,
    BalanceSummarySerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    PaymentUpdateSerializer,
)


class PaymentViewSet(viewsets.ModelViewSet):
    queryset = Payment.objects.all()
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    permission_action_map = {
        "list": "payments.view",
        "retrieve": "payments.view",
        "balance": "payments.view",
        "create": "payments.manage",
        "partial_update": "payments.manage",
        "destroy": "payments.manage",
        "complete": "payments.settle",
        "cancel": "payments.settle",
        "refund": "payments.refund",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        params = self.request.query_params
        for name in ("reference_type", "reference_id", "status", "method"):
            if params.get(name):
                qs = qs.filter(**{name: params[name]})
        return qs

    def _audit(self, action, payment, *, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="payment",
            entity_id=payment.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def _reconciler(self):
        return PaymentReconciler(get_event_sink())

    def create(self, request, *args, **kwargs):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        reference = DocumentReference(data.pop("reference_type"), data.pop("reference_id"))

        payment, warning = self._reconciler().create_payment(reference, actor=request.user, **data)
        payload = PaymentSerializer(payment).data
        self._audit("payment.create", payment, after_snapshot=payload)
        return Response({**payload, "overpayment_warning": warning}, status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        payment = self.get_object()
        serializer = PaymentUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        changes = dict(serializer.validated_data)
        confirm = changes.pop("confirm_overpayment")

        before_snapshot = PaymentSerializer(payment).data
        payment, warning = self._reconciler().edit_payment(payment, changes, confirm_overpayment=confirm)
        payload = PaymentSerializer(payment).data
        self._audit("payment.update", payment, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response({**payload, "overpayment_warning": warning})

    def perform_destroy(self, instance):
        before_snapshot = PaymentSerializer(instance).data
        self._reconciler().delete_payment(instance)
        self._audit("payment.delete", instance, before_snapshot=before_snapshot)

    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        return self._transition(self._reconciler().complete_payment, "payment.complete")

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        return self._transition(self._reconciler().cancel_payment, "payment.cancel")

    @action(detail=True, methods=["post"], url_path="refund")
    def refund(self, request, pk=None):
        return self._transition(self._reconciler().refund_payment, "payment.refund")

    @action(detail=False, methods=["get"], url_path="balance")
    def balance(self, request):
        query = BalanceQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        reference = DocumentReference(query.validated_data["reference_type"], query.validated_data["reference_id"])
        summary = PaymentReconciler().balance_summary(reference)
        return Response(BalanceSummarySerializer(summary).data)

    def _transition(self, transition, audit_action):
        payment = self.get_object()
        before_snapshot = PaymentSerializer(payment).data
        payment = transition(payment)
        payload = PaymentSerializer(payment).data
        self._audit(audit_action, payment, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)
