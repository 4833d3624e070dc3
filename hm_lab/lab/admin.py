# hm_lab/lab/admin.py
from django.contrib import admin

from hm_lab.lab.models import LabReport


@admin.register(LabReport)
class LabReportAdmin(admin.ModelAdmin):
    list_display = ("id", "order_item", "original_name", "size", "uploaded_at")
    search_fields = ("original_name", "filename", "order_item__test_name")
    ordering = ("-uploaded_at",)
