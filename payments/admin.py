from django.contrib import admin

from payments.models import Payment


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("payment_number", "reference_type", "reference_id", "amount", "method", "status", "payment_date")
    list_filter = ("status", "method", "reference_type")
    search_fields = ("payment_number",)
    readonly_fields = ("status", "completed_at", "cancelled_at", "refunded_at")
