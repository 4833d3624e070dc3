# hm_lab/catalog/admin.py
from django.contrib import admin

from hm_lab.catalog.models import LabTest


@admin.register(LabTest)
class LabTestAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "category", "price", "sample_type", "is_active")
    list_filter = ("category", "sample_type", "is_active")
    search_fields = ("name", "description", "category")
    ordering = ("name",)
