from decimal import Decimal

from rest_framework import serializers

from inventory.models import Batch, InventoryRecord, Location, MovementEntry, Product, Supplier


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "sku", "name", "cost_price", "selling_price", "is_active", "created_at", "updated_at"]
        read_only_fields = fields


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "code", "name", "current_debt", "credit_limit", "is_active", "created_at", "updated_at"]
        read_only_fields = fields


class LocationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Location
        fields = ["id", "code", "name", "is_active"]
        read_only_fields = fields


class InventoryRecordSerializer(serializers.ModelSerializer):
    location_code = serializers.CharField(source="location.code", read_only=True, default=None)
    total_quantity = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    quantity_available = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = InventoryRecord
        fields = [
            "id",
            "location",
            "location_code",
            "location_label",
            "quantity_on_hand",
            "quantity_on_shelf",
            "quantity_reserved",
            "total_quantity",
            "quantity_available",
            "updated_at",
        ]
        read_only_fields = fields


class BatchSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    inventory_record = InventoryRecordSerializer(read_only=True)
    is_expired = serializers.BooleanField(read_only=True)
    is_near_expiry = serializers.BooleanField(read_only=True)
    days_until_expiry = serializers.IntegerField(read_only=True)

    class Meta:
        model = Batch
        fields = [
            "id",
            "code",
            "product",
            "product_name",
            "quantity",
            "cost_price",
            "selling_price",
            "manufactured_on",
            "expires_on",
            "status",
            "promotion",
            "discount_percentage",
            "notes",
            "is_expired",
            "is_near_expiry",
            "days_until_expiry",
            "inventory_record",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class MovementEntrySerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = MovementEntry
        fields = [
            "id",
            "batch",
            "record",
            "direction",
            "bucket",
            "quantity",
            "reason",
            "source_ref_type",
            "source_ref_id",
            "notes",
            "actor",
            "actor_username",
            "created_at",
        ]
        read_only_fields = fields


class MoveToShelfSerializer(serializers.Serializer):
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    notes = serializers.CharField(required=False, allow_blank=True, default="")
