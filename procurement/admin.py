from django.contrib import admin

from procurement.models import PurchaseOrder, PurchaseOrderLine


class PurchaseOrderLineInline(admin.TabularInline):
    model = PurchaseOrderLine
    extra = 0
    readonly_fields = ("batch", "received_quantity", "received_at", "line_total")


@admin.register(PurchaseOrder)
class PurchaseOrderAdmin(admin.ModelAdmin):
    list_display = ("po_number", "supplier", "status", "payment_status", "total", "order_date")
    list_filter = ("status", "payment_status")
    search_fields = ("po_number", "supplier__name")
    readonly_fields = ("status", "payment_status", "subtotal", "discount_amount", "total")
    inlines = [PurchaseOrderLineInline]
