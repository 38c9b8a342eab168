from django.contrib import admin

from sales.models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "customer_name", "total", "status", "payment_status")
    list_filter = ("status", "payment_status")
    search_fields = ("order_number", "customer_name")
