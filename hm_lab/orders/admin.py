# hm_lab/orders/admin.py
from __future__ import annotations

from django.contrib import admin

from hm_lab.orders.models import LabOrder, LabOrderItem


class LabOrderItemInline(admin.TabularInline):
    model = LabOrderItem
    extra = 0
    fields = ("lab_test", "test_name", "unit_price", "is_selected", "status", "sample_allowed", "sample_id")
    readonly_fields = ("test_name", "unit_price", "sample_allowed", "sample_id")


@admin.register(LabOrder)
class LabOrderAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "patient",
        "order_total",
        "order_paid",
        "order_due",
        "sample_allowed",
        "payment_threshold",
        "created_at",
    )
    list_filter = ("sample_allowed", "created_at")
    search_fields = ("id", "patient__full_name", "patient__mrn")
    readonly_fields = ("order_total", "order_paid", "order_due", "sample_allowed")
    inlines = [LabOrderItemInline]
    ordering = ("-created_at",)
