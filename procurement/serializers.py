from decimal import Decimal

from rest_framework import serializers

from inventory.models import Batch, Location, Product, Supplier
from procurement.models import PurchaseOrder, PurchaseOrderLine
from procurement.workflow import PurchaseOrderWorkflow


class PurchaseOrderLineSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    batch_code = serializers.CharField(source="batch.code", read_only=True, default=None)
    is_received = serializers.BooleanField(read_only=True)

    class Meta:
        model = PurchaseOrderLine
        fields = [
            "id",
            "product",
            "product_name",
            "quantity",
            "unit_cost",
            "line_total",
            "batch",
            "batch_code",
            "received_quantity",
            "received_at",
            "is_received",
        ]
        read_only_fields = fields


class PurchaseOrderLineInputSerializer(serializers.Serializer):
    product = serializers.PrimaryKeyRelatedField(queryset=Product.objects.filter(is_active=True))
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    unit_cost = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))


class PurchaseOrderSerializer(serializers.ModelSerializer):
    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.filter(is_active=True))
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)
    shipping_fee = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    discount_percentage = serializers.DecimalField(
        max_digits=5,
        decimal_places=2,
        min_value=Decimal("0"),
        max_value=Decimal("100"),
        required=False,
    )
    lines = PurchaseOrderLineInputSerializer(many=True, write_only=True, required=False, allow_empty=False)

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "po_number",
            "supplier",
            "supplier_name",
            "order_date",
            "expected_delivery_date",
            "shipping_fee",
            "discount_percentage",
            "subtotal",
            "discount_amount",
            "total",
            "status",
            "payment_status",
            "notes",
            "created_by",
            "approved_at",
            "received_at",
            "cancelled_at",
            "created_at",
            "updated_at",
            "lines",
        ]
        read_only_fields = [
            "id",
            "po_number",
            "subtotal",
            "discount_amount",
            "total",
            "status",
            "payment_status",
            "created_by",
            "approved_at",
            "received_at",
            "cancelled_at",
            "created_at",
            "updated_at",
        ]

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data["lines"] = PurchaseOrderLineSerializer(instance.lines.select_related("product", "batch"), many=True).data
        return data

    def validate(self, attrs):
        writable = {name for name, field in self.fields.items() if not field.read_only}
        unknown = set(self.initial_data) - writable
        if unknown:
            raise serializers.ValidationError({name: ["This field cannot be changed."] for name in sorted(unknown)})
        if self.instance is None and not attrs.get("lines"):
            raise serializers.ValidationError({"lines": ["A purchase order needs at least one line."]})
        return attrs

    def create(self, validated_data):
        lines = validated_data.pop("lines")
        return PurchaseOrderWorkflow().create(lines=lines, **validated_data)

    def update(self, instance, validated_data):
        lines = validated_data.pop("lines", None)
        return PurchaseOrderWorkflow().apply_edit(instance, validated_data, lines=lines)


class ReceiveLineSerializer(serializers.Serializer):
    line_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    manufactured_on = serializers.DateField()
    expires_on = serializers.DateField()
    location = serializers.PrimaryKeyRelatedField(queryset=Location.objects.filter(is_active=True), required=False, allow_null=True)
    location_label = serializers.CharField(required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    batch_code = serializers.CharField(required=False, allow_blank=True, max_length=64)
    selling_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)

    def validate_batch_code(self, value):
        value = value.strip()
        if value and Batch.objects.filter(code=value).exists():
            raise serializers.ValidationError("A batch with this code already exists.")
        return value or None


class ReceiveSerializer(serializers.Serializer):
    lines = ReceiveLineSerializer(many=True, allow_empty=False)

    def validate_lines(self, value):
        line_ids = [item["line_id"] for item in value]
        if len(line_ids) != len(set(line_ids)):
            raise serializers.ValidationError("Each line can only be received once per request.")
        codes = [item["batch_code"] for item in value if item.get("batch_code")]
        if len(codes) != len(set(codes)):
            raise serializers.ValidationError("Batch codes must be unique.")
        return value


class LineReceiptSerializer(serializers.Serializer):
    line_id = serializers.UUIDField(source="line.id")
    batch_id = serializers.UUIDField(source="batch.id")
    batch_code = serializers.CharField(source="batch.code")
    movement_id = serializers.UUIDField(source="movement.id")
    quantity_on_hand = serializers.DecimalField(source="record.quantity_on_hand", max_digits=12, decimal_places=2)
