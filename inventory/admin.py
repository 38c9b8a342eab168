from django.contrib import admin

from inventory.models import Batch, InventoryRecord, Location, MovementEntry, Product, Supplier


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("sku", "name", "cost_price", "selling_price", "is_active")
    search_fields = ("sku", "name")


@admin.register(Supplier)
class SupplierAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "current_debt", "credit_limit", "is_active")
    search_fields = ("code", "name")


@admin.register(Location)
class LocationAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "is_active")


@admin.register(Batch)
class BatchAdmin(admin.ModelAdmin):
    list_display = ("code", "product", "quantity", "expires_on", "status")
    list_filter = ("status", "promotion")
    search_fields = ("code", "product__name")


@admin.register(InventoryRecord)
class InventoryRecordAdmin(admin.ModelAdmin):
    list_display = ("batch", "quantity_on_hand", "quantity_on_shelf", "quantity_reserved")
    readonly_fields = ("quantity_on_hand", "quantity_on_shelf")


@admin.register(MovementEntry)
class MovementEntryAdmin(admin.ModelAdmin):
    list_display = ("created_at", "batch", "direction", "bucket", "quantity", "reason")
    list_filter = ("direction", "bucket")
    readonly_fields = [field.name for field in MovementEntry._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
