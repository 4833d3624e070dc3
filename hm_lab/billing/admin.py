# hm_lab/billing/admin.py
from __future__ import annotations

from django.contrib import admin

from hm_lab.billing.models import LabPayment, PaymentAllocation


class PaymentAllocationInline(admin.TabularInline):
    model = PaymentAllocation
    extra = 0
    can_delete = False
    readonly_fields = ("order_item", "prescription", "test_name", "amount", "created_at")


@admin.register(LabPayment)
class LabPaymentAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "reference",
        "patient",
        "amount",
        "method",
        "status",
        "gateway_payment_id",
        "completed_at",
        "created_at",
    )
    list_filter = ("method", "status", "created_at")
    search_fields = ("reference", "gateway_payment_id", "transaction_id", "patient__full_name")
    readonly_fields = ("reference", "amount", "target", "status", "completed_at")
    inlines = [PaymentAllocationInline]
    ordering = ("-created_at",)
