from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from core.models import AuditLog, User


@admin.register(User)
class BackOfficeUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (("Back office", {"fields": ("role",)}),)
    list_display = ("username", "email", "role", "is_active", "is_staff")
    list_filter = ("role", "is_active", "is_staff")


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "action", "entity", "entity_id", "actor")
    list_filter = ("action", "entity")
    readonly_fields = [field.name for field in AuditLog._meta.fields]
