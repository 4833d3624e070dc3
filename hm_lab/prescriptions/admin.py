# hm_lab/prescriptions/admin.py
from django.contrib import admin

from hm_lab.prescriptions.models import Appointment, Prescription


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ("id", "patient", "doctor_id", "scheduled_at", "status")
    list_filter = ("status",)
    ordering = ("-scheduled_at",)


@admin.register(Prescription)
class PrescriptionAdmin(admin.ModelAdmin):
    list_display = ("id", "patient", "appointment", "doctor_id", "created_at")
    search_fields = ("patient__full_name", "diagnosis")
    ordering = ("-created_at",)
