# hm_lab/patients/admin.py
from django.contrib import admin

from hm_lab.patients.models import Patient


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ("id", "full_name", "mrn", "phone", "user_id", "created_at")
    search_fields = ("full_name", "mrn", "phone", "email")
    ordering = ("-created_at",)
