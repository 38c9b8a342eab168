from rest_framework import serializers

from sales.models import Order


class OrderSerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = ["id", "order_number", "customer_name", "total", "status", "payment_status", "created_at", "updated_at"]
        read_only_fields = fields
