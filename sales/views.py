from rest_framework import viewsets
from rest_framework.permissions import IsAuthenticated

from common.permissions import RoleCapabilityPermission
from sales.models import Order
from sales.serializers import OrderSerializer


class OrderViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Order.objects.all()
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "sales.view", "retrieve": "sales.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        payment_status = self.request.query_params.get("payment_status")
        if payment_status:
            qs = qs.filter(payment_status=payment_status)
        return qs
