# hm_lab/common/admin.py
from __future__ import annotations

from django.contrib import admin

from hm_lab.common.models import IdempotencyRecord, SystemSetting


@admin.register(SystemSetting)
class SystemSettingAdmin(admin.ModelAdmin):
    list_display = ("setting_key", "setting_value", "description", "updated_at")
    search_fields = ("setting_key", "description")
    ordering = ("setting_key",)


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "user_id", "method", "path", "idempotency_key", "status_code", "created_at")
    search_fields = ("idempotency_key", "path")
    ordering = ("-created_at",)
