from decimal import Decimal

from rest_framework import serializers

from payments.models import Payment


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "payment_number",
            "reference_type",
            "reference_id",
            "amount",
            "method",
            "payment_date",
            "status",
            "notes",
            "created_by",
            "completed_at",
            "cancelled_at",
            "refunded_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    reference_type = serializers.ChoiceField(choices=Payment.ReferenceType.choices)
    reference_id = serializers.UUIDField()
    # Positive amounts are enforced by the reconciler so the error carries its own code.
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    method = serializers.ChoiceField(choices=Payment.Method.choices)
    payment_date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    confirm_overpayment = serializers.BooleanField(required=False, default=False)


class PaymentUpdateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    method = serializers.ChoiceField(choices=Payment.Method.choices, required=False)
    payment_date = serializers.DateField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
    confirm_overpayment = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        unknown = set(self.initial_data) - set(self.fields)
        if unknown:
            raise serializers.ValidationError({name: ["This field cannot be changed."] for name in sorted(unknown)})
        return attrs


class BalanceQuerySerializer(serializers.Serializer):
    reference_type = serializers.ChoiceField(choices=Payment.ReferenceType.choices)
    reference_id = serializers.UUIDField()


class BalanceSummarySerializer(serializers.Serializer):
    reference_type = serializers.CharField()
    reference_id = serializers.UUIDField()
    total = serializers.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    remaining_balance = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))
    overpaid = serializers.BooleanField()
    payment_status = serializers.CharField()
